"""Lifestyle Blueprint - Resilient generation of meal plans and shopping lists."""

from blueprint.generation.backend import GenerationBackend, HttpGenerationBackend
from blueprint.generation.jobs import ArtifactKind, GenerationJob, JobRegistry, JobStatus, Operation
from blueprint.generation.pipeline import GenerationOutcome, GenerationPipeline, RetryPolicy
from blueprint.generation.progress import ProgressRelay, ProgressUpdate, SimulatedProgress

__all__ = [
    "ArtifactKind",
    "GenerationBackend",
    "GenerationJob",
    "GenerationOutcome",
    "GenerationPipeline",
    "HttpGenerationBackend",
    "JobRegistry",
    "JobStatus",
    "Operation",
    "ProgressRelay",
    "ProgressUpdate",
    "RetryPolicy",
    "SimulatedProgress",
]
