from .dsl import job, sh, checkout, cache, cache_restore, cache_save, docker_build, docker_push, remote, wf
from .controller import PipelineController, PipelineResult, RunState
from .loader import load_pipeline
from .model import Job, Step, JobStatus, PipelineDefinition, PipelineStatus, RunResult

__all__ = [
    "job", "sh", "checkout", "cache", "cache_restore", "cache_save", "docker_build", "docker_push", "remote", "wf",
    "PipelineController", "PipelineResult", "RunState", "load_pipeline",
    "Job", "Step", "JobStatus", "PipelineDefinition", "PipelineStatus", "RunResult",
]
