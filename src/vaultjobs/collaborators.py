"""
Services the built-in task handlers delegate to.

Each collaborator is described by a Protocol so the application can plug in
its own implementation; the defaults below cover a single-node deployment.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol
import hashlib
import hmac
import json
import logging
import shlex
import shutil
import subprocess

import httpx
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import sessionmaker

from .models import File, ShareLink

logger = logging.getLogger(__name__)


@dataclass
class DuplicateSet:
    """Files sharing one checksum."""
    checksum: str
    file_ids: List[int] = field(default_factory=list)


@dataclass
class ScanResult:
    """Outcome of scanning one path."""
    path: str
    infected: bool = False
    detail: str = ""


class FileService(Protocol):
    def purge_soft_deleted(self, older_than: datetime) -> int:
        ...

    def deactivate_expired_shares(self, now: datetime) -> int:
        ...


class ChecksumIndex(Protocol):
    def group_by_checksum(self) -> List[DuplicateSet]:
        ...


class WebhookSender(Protocol):
    def deliver(self, url: str, payload: Dict[str, Any], secret: Optional[str] = None) -> None:
        ...


class RemoteStorage(Protocol):
    def copy_to_remote(self, local_ref: str) -> str:
        ...


class VirusScanner(Protocol):
    def scan(self, path: str) -> ScanResult:
        ...


class SqlFileService:
    """``FileService`` and ``ChecksumIndex`` over the application's file tables."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def purge_soft_deleted(self, older_than: datetime) -> int:
        """Permanently remove files soft-deleted strictly before ``older_than``."""
        with self._session_factory() as session:
            result = session.execute(
                delete(File)
                .where(File.is_deleted.is_(True), File.deleted_at < older_than)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount or 0

    def deactivate_expired_shares(self, now: datetime) -> int:
        with self._session_factory() as session:
            result = session.execute(
                update(ShareLink)
                .where(ShareLink.is_active.is_(True), ShareLink.expires_at < now)
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount or 0

    def group_by_checksum(self) -> List[DuplicateSet]:
        """Checksums shared by more than one live file, with their file ids."""
        with self._session_factory() as session:
            duplicated = (
                select(File.hash_md5)
                .where(File.hash_md5.is_not(None), File.is_deleted.is_(False))
                .group_by(File.hash_md5)
                .having(func.count(File.id) > 1)
            )
            rows = session.execute(
                select(File.hash_md5, File.id)
                .where(File.hash_md5.in_(duplicated), File.is_deleted.is_(False))
                .order_by(File.hash_md5, File.id)
            ).all()

        groups: Dict[str, DuplicateSet] = {}
        for checksum, file_id in rows:
            groups.setdefault(checksum, DuplicateSet(checksum=checksum)).file_ids.append(file_id)
        return list(groups.values())


def sign_payload(body: bytes, secret: str) -> str:
    """HMAC-SHA256 signature header value for a webhook body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class HttpWebhookSender:
    """Deliver JSON webhooks over HTTP, signing the body when a secret is set."""

    SIGNATURE_HEADER = "X-Webhook-Signature"

    def __init__(self, client: Optional[httpx.Client] = None, timeout: float = 10.0):
        self._client = client or httpx.Client(timeout=timeout)

    def deliver(self, url: str, payload: Dict[str, Any], secret: Optional[str] = None) -> None:
        body = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if secret:
            headers[self.SIGNATURE_HEADER] = sign_payload(body, secret)

        response = self._client.post(url, content=body, headers=headers)
        response.raise_for_status()
        logger.info(f"Delivered webhook to {url} ({response.status_code})")

    def close(self) -> None:
        self._client.close()


class LocalMirrorStorage:
    """
    ``RemoteStorage`` that mirrors files into a backup directory.

    Each source keeps its absolute path below the root, so files sharing a
    name in different directories never overwrite each other.
    """

    def __init__(self, root: str):
        self.root = Path(root)

    def destination_for(self, source: Path) -> Path:
        source = source.resolve()
        return self.root / source.relative_to(source.anchor)

    def copy_to_remote(self, local_ref: str) -> str:
        source = Path(local_ref)
        if not source.is_file():
            raise FileNotFoundError(f"Backup source not found: {local_ref}")

        destination = self.destination_for(source)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)
        return str(destination)


class ClamdScanner:
    """``VirusScanner`` running a ClamAV command line client."""

    def __init__(self, command: str = "clamdscan --no-summary", timeout: int = 300):
        self.command = shlex.split(command)
        self.timeout = timeout

    def scan(self, path: str) -> ScanResult:
        result = subprocess.run(
            [*self.command, path],
            capture_output=True,
            text=True,
            timeout=self.timeout,
        )

        # clamdscan: 0 = clean, 1 = virus found, anything else = scanner error
        if result.returncode == 0:
            return ScanResult(path=path, infected=False, detail=result.stdout.strip())
        if result.returncode == 1:
            return ScanResult(path=path, infected=True, detail=result.stdout.strip())
        raise RuntimeError(
            f"Virus scan of {path} failed with return code {result.returncode}: {result.stderr.strip()}"
        )
