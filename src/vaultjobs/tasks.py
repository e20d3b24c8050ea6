"""
Built-in task handlers.

One handler per job type. Each reads its job's ``config``, delegates the
actual work to a collaborator and returns a result message; problems are
raised as ``HandlerError`` so the executor records them on the failed run.
"""

from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional
import logging

from .clock import utcnow
from .collaborators import (
    ChecksumIndex, FileService, RemoteStorage, VirusScanner, WebhookSender,
)
from .errors import HandlerError
from .registry import JobType, TaskHandler, TaskRegistry

logger = logging.getLogger(__name__)


def _string_list(config: Dict[str, Any], key: str) -> List[str]:
    value = config.get(key)
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return value
    raise HandlerError(f"Config field '{key}' must be a string or a list of strings")


class CleanupTask(TaskHandler):
    """Purge soft-deleted files past the retention window and expire share links."""

    def __init__(
        self,
        files: FileService,
        default_retention_days: int = 30,
        now: Callable = utcnow,
    ):
        self.files = files
        self.default_retention_days = default_retention_days
        self.now = now

    def retention_days(self, config: Dict[str, Any]) -> int:
        raw = config.get("retentionDays", config.get("retention_days"))
        if raw is None:
            return self.default_retention_days
        try:
            days = int(raw)
        except (TypeError, ValueError):
            raise HandlerError(f"retentionDays must be an integer, got {raw!r}")
        if days < 0:
            raise HandlerError(f"retentionDays must not be negative, got {days}")
        return days

    def execute(self, config: Dict[str, Any]) -> str:
        days = self.retention_days(config)
        now = self.now()
        cutoff = now - timedelta(days=days)

        purged = self.files.purge_soft_deleted(cutoff)
        expired = self.files.deactivate_expired_shares(now)

        logger.info(f"Cleanup purged {purged} files deleted before {cutoff.isoformat()}, deactivated {expired} share links")
        return f"Purged {purged} soft-deleted files older than {days} days; deactivated {expired} expired share links"


class DuplicateDetectionTask(TaskHandler):
    """Report sets of live files that share a checksum."""

    def __init__(self, index: ChecksumIndex):
        self.index = index

    def execute(self, config: Dict[str, Any]) -> str:
        duplicates = self.index.group_by_checksum()
        redundant = sum(len(group.file_ids) - 1 for group in duplicates)

        logger.info(f"Found {len(duplicates)} sets of duplicate files")
        for group in duplicates:
            logger.debug(f"Duplicate checksum {group.checksum}: files {group.file_ids}")

        return f"Found {len(duplicates)} sets of duplicate files ({redundant} redundant copies)"


class BackupTask(TaskHandler):
    """Copy every configured source to remote storage."""

    def __init__(self, storage: RemoteStorage):
        self.storage = storage

    def execute(self, config: Dict[str, Any]) -> str:
        sources = _string_list(config, "sources")
        if not sources:
            raise HandlerError("Backup job has no 'sources' configured")

        failures = []
        for source in sources:
            try:
                self.storage.copy_to_remote(source)
            except Exception as e:
                logger.error(f"Backup of {source} failed: {e}")
                failures.append(f"{source}: {e}")

        if failures:
            raise HandlerError(
                f"Backed up {len(sources) - len(failures)}/{len(sources)} sources; failed: " + "; ".join(failures)
            )
        return f"Backed up {len(sources)} sources"


class VirusScanTask(TaskHandler):
    """Scan configured paths; any infection or scanner error fails the run."""

    def __init__(self, scanner: VirusScanner, timeout: Optional[float] = None):
        self.scanner = scanner
        self.timeout = timeout

    def execute(self, config: Dict[str, Any]) -> str:
        paths = _string_list(config, "paths")
        if not paths:
            raise HandlerError("Virus scan job has no 'paths' configured")

        infected = []
        for path in paths:
            try:
                result = self.scanner.scan(path)
            except Exception as e:
                raise HandlerError(f"Scanner error on {path}: {e}")
            if result.infected:
                logger.warning(f"Infection found in {path}: {result.detail}")
                infected.append(f"{path} ({result.detail})" if result.detail else path)

        if infected:
            raise HandlerError(f"Infected files found: {', '.join(infected)}")
        return f"Scanned {len(paths)} paths, no infections found"


class WebhookTask(TaskHandler):
    """Deliver the configured payload to a webhook URL."""

    def __init__(self, sender: WebhookSender):
        self.sender = sender

    def execute(self, config: Dict[str, Any]) -> str:
        url = config.get("url")
        if not url or not isinstance(url, str):
            raise HandlerError("Webhook job has no 'url' configured")

        payload = config.get("payload") or {}
        if not isinstance(payload, dict):
            raise HandlerError("Webhook 'payload' must be an object")

        try:
            self.sender.deliver(url, payload, config.get("secret"))
        except Exception as e:
            raise HandlerError(f"Webhook delivery to {url} failed: {e}")
        return f"Webhook delivered to {url}"


def build_default_registry(
    files: FileService,
    index: ChecksumIndex,
    storage: RemoteStorage,
    scanner: VirusScanner,
    sender: WebhookSender,
    cleanup_retention_days: int = 30,
    virus_scan_timeout: Optional[float] = None,
    now: Callable = utcnow,
) -> TaskRegistry:
    """Registry with the five built-in handlers wired to their collaborators."""
    registry = TaskRegistry()
    registry.register(
        JobType.CLEANUP,
        CleanupTask(files, default_retention_days=cleanup_retention_days, now=now),
    )
    registry.register(JobType.DUPLICATE_DETECTION, DuplicateDetectionTask(index))
    registry.register(JobType.BACKUP, BackupTask(storage))
    registry.register(JobType.VIRUS_SCAN, VirusScanTask(scanner, timeout=virus_scan_timeout))
    registry.register(JobType.WEBHOOK, WebhookTask(sender))
    return registry
