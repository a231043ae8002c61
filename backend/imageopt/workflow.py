"""
LangGraph workflow for adaptive image optimization.
Handles the orchestration of the size gate, recompression, format transcoding
and candidate selection for a single image.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Union

from langgraph.graph import StateGraph, END
from werkzeug.datastructures import FileStorage

from imageopt.capabilities import CapabilityProbe, can_encode
from imageopt.errors import InvalidImageError
from imageopt.models import (
    CompressionCandidate,
    OptimizationConfig,
    OptimizedImage,
    Provenance,
    SourceImage,
    StageOutcome,
)
from imageopt.progress import (
    PROGRESS_COMPRESS_BEGIN,
    PROGRESS_COMPRESS_DONE,
    PROGRESS_START,
    PROGRESS_TRANSCODE_BEGIN,
    PROGRESS_TRANSCODE_DONE,
    PROGRESS_TRANSCODE_DRAWN,
    compression_band,
)
from imageopt.selection import select_best
from imageopt.state import OptimizationState, create_initial_state, extract_response
from imageopt.utils.image_processing import compress_image
from imageopt.utils.transcode import WEBP_MIME_TYPE, transcode_image
from imageopt.utils.validation import replace_extension, validate_image


logger = logging.getLogger(__name__)

# Images at or below this size are returned untouched
SKIP_THRESHOLD_BYTES = 50 * 1024

ImageInput = Union[SourceImage, FileStorage, bytes, bytearray]


def _kb(size: int) -> str:
    return f"{size / 1024:.2f} KB"


def _context(source: SourceImage, stage: str) -> dict:
    return {'image_name': source.name, 'size_bytes': source.size, 'stage': stage}


class WorkflowNodes:
    """
    Collection of LangGraph nodes for the optimization workflow.
    Each node is a step in the processing pipeline and returns only the
    state keys it changes.
    """

    def __init__(self, capability_probe: CapabilityProbe = can_encode,
                 skip_threshold: int = SKIP_THRESHOLD_BYTES):
        """
        Initialize workflow nodes.

        Args:
            capability_probe: Answers "can this runtime encode format X"
            skip_threshold: Byte size at or below which optimization is skipped
        """
        self.capability_probe = capability_probe
        self.skip_threshold = skip_threshold

    @staticmethod
    def current_best(state: OptimizationState) -> CompressionCandidate:
        original = CompressionCandidate.original(state["source"])
        return select_best(state.get("outcomes") or [], original)

    def gate_check(self, state: OptimizationState) -> dict:
        """
        Node deciding whether optimization runs at all.
        """
        source = state["source"]
        state["progress"].update(PROGRESS_START)

        logger.info(f'Original: {_kb(source.size)}', extra=_context(source, 'gate_check'))

        skipped = source.size <= self.skip_threshold
        transitions = ["GATE_CHECK"]
        if skipped:
            transitions.append("SKIP")
            if state["options"].debug:
                logger.info(f'Image is very small, skipping optimization: {source.name}',
                            extra=_context(source, 'gate_check'))

        return {"skipped": skipped, "transitions": transitions}

    def route_after_gate(self, state: OptimizationState) -> str:
        return "skip" if state.get("skipped") else "optimize"

    def compress(self, state: OptimizationState) -> dict:
        """
        Node running bounded lossy recompression on a worker thread.

        A failure is recorded as a failed outcome; the original stays the
        current best candidate.
        """
        source = state["source"]
        options = state["options"]
        progress = state["progress"]

        progress.update(PROGRESS_COMPRESS_BEGIN)
        start_time = time.monotonic()

        try:
            with ThreadPoolExecutor(max_workers=1, thread_name_prefix='imageopt-compress') as pool:
                future = pool.submit(
                    compress_image,
                    source.data,
                    source.mime_type,
                    max_size_mb=options.max_size_mb,
                    max_width_or_height=options.max_width_or_height,
                    quality=options.quality,
                    on_progress=lambda p: progress.update(compression_band(p)),
                )
                compressed = future.result()

            candidate = CompressionCandidate(
                data=compressed,
                mime_type=source.mime_type,
                provenance=Provenance.COMPRESSED,
                filename=source.name,
            )
        except Exception as e:
            logger.error(f'Error compressing {source.name} ({_kb(source.size)}): {str(e)}',
                         exc_info=True, extra={**_context(source, 'compress'), 'status': 'error'})
            progress.update(PROGRESS_COMPRESS_DONE)
            return {
                "outcomes": [StageOutcome.failure("compress", e)],
                "transitions": ["COMPRESS_FAILED"],
            }

        progress.update(PROGRESS_COMPRESS_DONE)

        duration_ms = int((time.monotonic() - start_time) * 1000)
        if candidate.size >= source.size:
            logger.info(f'Compression did not reduce size ({_kb(candidate.size)}), keeping original',
                        extra={**_context(source, 'compress'), 'duration_ms': duration_ms, 'status': 'discarded'})
        else:
            logger.debug(f'Compressed to {_kb(candidate.size)}',
                         extra={**_context(source, 'compress'), 'duration_ms': duration_ms, 'status': 'success'})

        return {
            "outcomes": [StageOutcome.success("compress", candidate)],
            "transitions": ["COMPRESS_OK"],
        }

    def route_after_compress(self, state: OptimizationState) -> str:
        """
        Decide whether a transcode is attempted. The capability probe is
        only consulted when the other preconditions hold.
        """
        if not state["options"].use_webp:
            return "select"
        if self.current_best(state).mime_type == WEBP_MIME_TYPE:
            return "select"
        try:
            supported = self.capability_probe(WEBP_MIME_TYPE)
        except Exception as e:
            logger.warning(f'Capability check failed, skipping transcode: {str(e)}',
                           exc_info=True, extra={**_context(state["source"], 'transcode'), 'status': 'error'})
            return "select"
        if not supported:
            logger.debug('WebP encoding not supported by this runtime, skipping transcode')
            return "select"
        return "transcode"

    def transcode(self, state: OptimizationState) -> dict:
        """
        Node transcoding the current best candidate to WebP.

        The result is a candidate like any other; selection adopts it only
        if it is strictly smaller. Failures keep the previous best.
        """
        source = state["source"]
        options = state["options"]
        progress = state["progress"]
        best = self.current_best(state)

        progress.update(PROGRESS_TRANSCODE_BEGIN)

        try:
            data, mime_type = transcode_image(
                best.data,
                quality=options.quality,
                target_mime=WEBP_MIME_TYPE,
                on_drawn=lambda: progress.update(PROGRESS_TRANSCODE_DRAWN),
            )
            candidate = CompressionCandidate(
                data=data,
                mime_type=mime_type,
                provenance=Provenance.TRANSCODED,
                filename=replace_extension(best.filename, mime_type),
            )
        except Exception as e:
            logger.warning(f'WebP conversion failed, using standard compression: {str(e)}',
                           exc_info=True, extra={**_context(source, 'transcode'), 'status': 'error'})
            return {
                "outcomes": [StageOutcome.failure("transcode", e)],
                "transitions": ["TRANSCODE_FAILED"],
                "transcode_status": "failed",
            }

        progress.update(PROGRESS_TRANSCODE_DONE)

        adopted = candidate.size < best.size
        if not adopted:
            logger.debug(f'Transcoded {candidate.mime_type} is not smaller ({_kb(candidate.size)}), discarding',
                         extra={**_context(source, 'transcode'), 'status': 'discarded'})

        return {
            "outcomes": [StageOutcome.success("transcode", candidate)],
            "transitions": ["TRANSCODE_OK"],
            "transcode_status": "ok" if adopted else "discarded",
        }

    def select_best(self, state: OptimizationState) -> dict:
        """
        Node folding every stage outcome into the smallest candidate.
        """
        transitions = []
        if state.get("transcode_status") is None:
            transitions.append("TRANSCODE_SKIPPED")
        transitions.append("SELECT_BEST")

        return {"result": self.current_best(state), "transitions": transitions}

    def finish(self, state: OptimizationState) -> dict:
        """
        Terminal node: report the outcome and drive progress to 100.
        """
        source = state["source"]
        options = state["options"]
        result = state.get("result") or CompressionCandidate.original(source)

        if state.get("skipped"):
            logger.info(f'Optimized: {_kb(source.size)} (skipped - already small)',
                        extra={**_context(source, 'finish'), 'status': 'skipped'})
        else:
            reduction = (1 - result.size / source.size) * 100
            logger.info(f'Optimized: {_kb(result.size)} ({reduction:.1f}% reduction)',
                        extra={**_context(source, 'finish'), 'mime_type': result.mime_type, 'status': 'success'})

        if options.debug:
            final_dims = SourceImage(data=result.data, mime_type=result.mime_type).dimensions
            logger.info(f'Original format: {source.mime_type}, dimensions: {source.dimensions}')
            logger.info(f'Final format: {result.mime_type}, dimensions: {final_dims}')

        state["progress"].complete()
        return {"result": result, "transitions": ["DONE"]}


def build_workflow(capability_probe: CapabilityProbe = can_encode,
                   skip_threshold: int = SKIP_THRESHOLD_BYTES) -> StateGraph:
    """
    Build the LangGraph workflow for image optimization.

    The workflow follows this sequence:
    1. gate_check: Skip tiny images entirely
    2. compress: Bounded lossy recompression and resize
    3. transcode: Optional WebP transcode of the current best candidate
    4. select_best: Keep the smallest candidate
    5. finish: Log the result and report 100% progress

    Args:
        capability_probe: Runtime encoder check, queried at most once per call
        skip_threshold: Byte size at or below which optimization is skipped

    Returns:
        Compiled StateGraph workflow ready for execution
    """
    workflow = StateGraph(OptimizationState)

    nodes = WorkflowNodes(capability_probe, skip_threshold)

    # Add nodes to workflow
    workflow.add_node("gate_check", nodes.gate_check)
    workflow.add_node("compress", nodes.compress)
    workflow.add_node("transcode", nodes.transcode)
    workflow.add_node("select_best", nodes.select_best)
    workflow.add_node("finish", nodes.finish)

    # Define workflow edges (execution order)
    workflow.set_entry_point("gate_check")
    workflow.add_conditional_edges("gate_check", nodes.route_after_gate, {
        "skip": "finish",
        "optimize": "compress",
    })
    workflow.add_conditional_edges("compress", nodes.route_after_compress, {
        "transcode": "transcode",
        "select": "select_best",
    })
    workflow.add_edge("transcode", "select_best")
    workflow.add_edge("select_best", "finish")
    workflow.add_edge("finish", END)

    # Compile and return
    return workflow.compile()


def to_source_image(image: ImageInput) -> SourceImage:
    """
    Normalize the caller's handle into a validated SourceImage.

    Raises:
        InvalidImageError: If the handle is not a recognizable image binary
    """
    if isinstance(image, SourceImage):
        source = image
    elif isinstance(image, FileStorage):
        source = SourceImage.from_file_storage(image)
    elif isinstance(image, (bytes, bytearray)):
        source = SourceImage.from_bytes(image)
    else:
        raise InvalidImageError("Invalid image file provided")

    is_valid, error_msg = validate_image(source.data, source.mime_type)
    if not is_valid:
        raise InvalidImageError(error_msg)
    return source


class ImageOptimizer:
    """
    LangGraph workflow for optimizing uploaded images before storage.

    One instance can serve many concurrent calls; every call gets its own
    state, progress reporter and candidate list.
    """

    def __init__(self, capability_probe: CapabilityProbe = can_encode,
                 skip_threshold: int = SKIP_THRESHOLD_BYTES):
        """Initialize the optimizer and compile its workflow"""
        self.capability_probe = capability_probe
        self.skip_threshold = skip_threshold
        self.workflow = build_workflow(capability_probe, skip_threshold)

    def run_with_state(self, image: ImageInput,
                       config: Optional[OptimizationConfig] = None) -> OptimizationState:
        """
        Run the workflow and return its final state.

        Raises:
            InvalidImageError: If the input is not a recognizable image
        """
        source = to_source_image(image)
        options = config or OptimizationConfig()
        initial_state = create_initial_state(source, options)

        try:
            return self.workflow.invoke(initial_state)
        except Exception as e:
            # Nodes absorb stage failures; this only catches the unexpected
            logger.error(f'Error optimizing image: {str(e)}', exc_info=True,
                         extra={**_context(source, 'workflow'), 'status': 'error'})
            logger.info(f'Optimization failed, using original: {_kb(source.size)}')
            initial_state["progress"].complete()
            return {
                **initial_state,
                "result": CompressionCandidate.original(source),
                "transitions": ["DONE"],
            }

    def run(self, image: ImageInput, config: Optional[OptimizationConfig] = None) -> OptimizedImage:
        """
        Optimize one image.

        Args:
            image: SourceImage, uploaded FileStorage or raw bytes
            config: Options for this call (defaults when omitted)

        Returns:
            OptimizedImage, never larger than the input

        Raises:
            InvalidImageError: If the input is not a recognizable image
        """
        return extract_response(self.run_with_state(image, config))
