from .pipeline_client import (
    PipelineClient,
    PipelineConnectionError,
    PipelineError,
    PipelineServerError,
    PipelineTimeoutError,
    RunHandle,
)

__all__ = [
    "PipelineClient",
    "PipelineConnectionError",
    "PipelineError",
    "PipelineServerError",
    "PipelineTimeoutError",
    "RunHandle",
]
