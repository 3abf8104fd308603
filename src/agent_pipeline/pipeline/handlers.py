"""Built-in job handlers.

Handlers are re-entrant: a job that paused on a checkpoint is dispatched
again from the start after approval, and uses ``context.is_approved`` to
skip past gates it already cleared.
"""

from __future__ import annotations

from typing import Any

from agent_pipeline.pipeline.executor import (
    Completed,
    ExecutionContext,
    ExecutionOutcome,
    Failed,
    HandlerRegistryExecutor,
    Paused,
)
from agent_pipeline.pipeline.models import CheckpointRequest

FILE_REVIEW_STAGE = "file_review"
INPUT_REVIEW_STAGE = "input_review"
OUTPUT_REVIEW_STAGE = "output_review"
PREVIEW_CHARS = 200
SAMPLE_SIZE = 5


def simple_task_handler(context: ExecutionContext) -> ExecutionOutcome:
    context.record_checkpoint(
        "task_started",
        "Task execution started.",
        data={"input": context.input_data},
        metadata={"handler": "simple-task"},
    )
    context.log("executing", "Executing simple task.")
    return Completed(
        result={
            "success": True,
            "instruction": context.input_data.get("instruction"),
        },
    )


def code_generation_handler(context: ExecutionContext) -> ExecutionOutcome:
    """Review proposed files before "writing" them."""

    files = _task_context(context).get("files") or []
    if not isinstance(files, list) or not files:
        return Failed(reason="No files specified for code generation.", retryable=False)

    if not context.is_approved(FILE_REVIEW_STAGE):
        context.log("thinking", f"Prepared {len(files)} file(s) for review.")
        return Paused(
            checkpoints=(
                CheckpointRequest(
                    stage=FILE_REVIEW_STAGE,
                    message=(
                        f"Ready to create/modify {len(files)} file(s). "
                        "Review the changes before proceeding."
                    ),
                    data={
                        "files": [_file_preview(item) for item in files],
                        "total_files": len(files),
                    },
                ),
            ),
        )

    context.raise_if_cancelled()
    written = [
        {"path": str(item.get("path", "")), "status": "created", "size": _content_size(item)}
        for item in files
        if isinstance(item, dict)
    ]
    context.log("executing", f"Wrote {len(written)} file(s).")
    return Completed(result={"success": True, "files_created": written})


def data_processing_handler(context: ExecutionContext) -> ExecutionOutcome:
    """Two sequential gates: review the input, then review the output."""

    task_context = _task_context(context)
    items = task_context.get("data") or []
    if not isinstance(items, list):
        return Failed(reason="context.data must be a list.", retryable=False)
    operation = task_context.get("operation")

    if not context.is_approved(INPUT_REVIEW_STAGE):
        return Paused(
            checkpoints=(
                CheckpointRequest(
                    stage=INPUT_REVIEW_STAGE,
                    message=(
                        f"Review input data before processing. {len(items)} items to process."
                    ),
                    data={"item_count": len(items), "operation": operation},
                ),
                CheckpointRequest(
                    stage=OUTPUT_REVIEW_STAGE,
                    message="Review processed results.",
                ),
            ),
        )

    context.raise_if_cancelled()
    processed = [{"index": index, "processed": True} for index, _ in enumerate(items)]
    context.log("processing", f"Processed {len(processed)} items.")

    if not context.is_approved(OUTPUT_REVIEW_STAGE):
        return Paused(
            checkpoints=(
                CheckpointRequest(
                    stage=OUTPUT_REVIEW_STAGE,
                    message=f"Review processed results. {len(processed)} items processed.",
                    data={
                        "processed_count": len(processed),
                        "sample": processed[:SAMPLE_SIZE],
                    },
                ),
            ),
        )

    return Completed(result={"success": True, "processed_count": len(processed)})


def default_executor() -> HandlerRegistryExecutor:
    """Registry with the built-in job types."""

    return HandlerRegistryExecutor(
        {
            "simple-task": simple_task_handler,
            "code-generation": code_generation_handler,
            "data-processing": data_processing_handler,
        },
    )


def _task_context(context: ExecutionContext) -> dict[str, Any]:
    value = context.input_data.get("context")
    return value if isinstance(value, dict) else {}


def _file_preview(item: object) -> dict[str, Any]:
    if not isinstance(item, dict):
        return {"path": "", "content_preview": "", "size": 0}
    content = str(item.get("content", ""))
    return {
        "path": str(item.get("path", "")),
        "content_preview": content[:PREVIEW_CHARS],
        "size": len(content),
    }


def _content_size(item: dict[str, Any]) -> int:
    return len(str(item.get("content", "")))
