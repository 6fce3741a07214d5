from fastapi import Request

from .backup_manager import BackupRunner
from .scheduler import BackupScheduler
from .storage import StorageProvider


def get_settings(request: Request) -> dict:
    return request.app.state.settings


def get_runner(request: Request) -> BackupRunner:
    return request.app.state.runner


def get_scheduler(request: Request) -> BackupScheduler:
    return request.app.state.scheduler


def get_storage(request: Request) -> StorageProvider:
    return request.app.state.storage
