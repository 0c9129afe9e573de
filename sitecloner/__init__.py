from .cloner import CaptureOptions, Progress, build_options, clone_page
from .egress import evaluate
from .jobs import JobManager, JobStatus
from .utils import parse_timeout

__all__ = [
    "CaptureOptions",
    "JobManager",
    "JobStatus",
    "Progress",
    "build_options",
    "clone_page",
    "evaluate",
    "parse_timeout",
]
