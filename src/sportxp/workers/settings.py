"""arq worker settings module.

Import path for arq CLI: arq sportxp.workers.settings.WorkerSettings
"""

from __future__ import annotations

from sportxp.progression.worker import ProgressionWorkerSettings as WorkerSettings

__all__ = ["WorkerSettings"]
