from .base import Action, ActionContext, ActionOutcome, FunctionAction
from .download import DownloadAction, extract_tar
from .env import EnvAction
from .process import ProcessAction, terminate_process_group

__all__ = [
    "Action",
    "ActionContext",
    "ActionOutcome",
    "FunctionAction",
    "DownloadAction",
    "extract_tar",
    "EnvAction",
    "ProcessAction",
    "terminate_process_group",
]
