"""
State definition for the image optimization workflow.
Defines the data structure that flows through the LangGraph workflow.
"""
from typing import TypedDict, List, Optional, Annotated
import operator

from imageopt.models import (
    CompressionCandidate,
    OptimizationConfig,
    OptimizedImage,
    SourceImage,
    StageOutcome,
)
from imageopt.progress import ProgressReporter


class OptimizationState(TypedDict):
    """
    State for one optimization call.

    This state is passed through the LangGraph workflow and updated by each node.
    Nothing in it is shared between calls.
    """

    # Input fields (provided by the caller)
    source: SourceImage
    options: OptimizationConfig
    progress: ProgressReporter

    # Intermediate fields (generated during workflow)
    outcomes: Annotated[List[StageOutcome], operator.add]  # Candidates and failures, in stage order
    transitions: Annotated[List[str], operator.add]  # State machine path taken
    skipped: Optional[bool]  # SizeGate decision
    transcode_status: Optional[str]  # "ok" | "discarded" | "failed" | None when not attempted

    # Output fields
    result: Optional[CompressionCandidate]


def create_initial_state(
    source: SourceImage,
    config: OptimizationConfig,
    progress: Optional[ProgressReporter] = None,
) -> OptimizationState:
    """
    Create an initial state for the workflow.

    Args:
        source: Image to optimize
        config: Caller options
        progress: Reporter for this call (created from config.on_progress if omitted)

    Returns:
        OptimizationState ready for workflow execution
    """
    return {
        "source": source,
        "options": config,
        "progress": progress or ProgressReporter(config.on_progress),
        "outcomes": [],
        "transitions": [],
        "skipped": None,
        "transcode_status": None,
        "result": None,
    }


def extract_response(state: OptimizationState) -> OptimizedImage:
    """
    Extract the optimized image from the final state.

    Args:
        state: Final workflow state after execution

    Returns:
        OptimizedImage for the caller (the original when nothing better was produced)
    """
    source = state["source"]
    winner = state.get("result") or CompressionCandidate.original(source)
    return OptimizedImage.from_candidate(winner, original_size=source.size)
