"""
Click tracking pipeline: recorder (producer) and worker (consumer).
"""

from .click_recorder import ClickRecorder
from .click_worker import ClickWorker

__all__ = ["ClickRecorder", "ClickWorker"]
