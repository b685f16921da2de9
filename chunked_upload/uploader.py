"""
Chunked Upload — Azure Large File Uploader
CLI utility for uploading files (or entire directory trees) to Azure Blob Storage
through a bounded-concurrency chunk scheduler.

Usage:
    python -m chunked_upload <path> [container_name] [--blob-prefix PREFIX] [--dry-run]

    <path> can be a single file or a directory.
    When a directory is given, all files under it (recursively) are uploaded,
    preserving the relative directory structure as the blob path.

Features:
    - Accepts a file or an entire directory tree as input
    - Block blob chunked upload, chunks staged with a fixed concurrency ceiling
    - Per-chunk retry budget with exponential backoff
    - Ctrl-C cancels the in-flight chunks and stops the run
    - Blob metadata stamped on commit
"""

import asyncio
import base64
import binascii
import logging
import os
import signal
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from azure.core.exceptions import ResourceExistsError
from azure.storage.blob.aio import BlobServiceClient
from dotenv import load_dotenv

from .azure_transport import AzureBlockTransport
from .chunks import split_file
from .scheduler import exponential_backoff
from .session import UploadSession
from .tasks import SessionPhase

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def _build_logger(log_dir: Path) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("chunked_upload")
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    fh = logging.FileHandler(log_dir / "uploader_process.log", encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    logger.addHandler(console)
    logger.addHandler(fh)
    return logger


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

_DEFAULTS = {
    "CHUNK_SIZE_MB": 8,
    "CONCURRENCY": 4,
    "MAX_RETRIES": 3,
    "RETRY_BASE_DELAY": 2,
}

_PORTAL_HINT = "Copy a fresh connection string from Azure Portal → Storage account → Access keys."


def _env_int(name: str) -> int:
    raw = os.getenv(name, str(_DEFAULTS[name]))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'.")


class Config:
    def __init__(self) -> None:
        load_dotenv()

        self.conn_str: str = os.environ["AZURE_CONN_STR"]
        self.container_name: str = os.getenv("CONTAINER_NAME", "")
        self.chunk_size: int = _env_int("CHUNK_SIZE_MB") * 1024 * 1024
        self.concurrency: int = _env_int("CONCURRENCY")
        self.max_retries: int = _env_int("MAX_RETRIES")
        self.retry_base_delay: int = _env_int("RETRY_BASE_DELAY")
        self.log_path: Optional[str] = os.getenv("LOG_PATH")

        self._validate_connection_string()

        # Azure max block size is 4000 MiB
        if self.chunk_size > 4000 * 1024 * 1024:
            raise ValueError(
                f"CHUNK_SIZE_MB exceeds Azure maximum (4000 MB). Got {self.chunk_size // (1024*1024)} MB."
            )
        if self.chunk_size < 1024 * 1024:
            raise ValueError("CHUNK_SIZE_MB must be at least 1 MB.")
        if self.concurrency < 1:
            raise ValueError(f"CONCURRENCY must be at least 1. Got {self.concurrency}.")
        if self.max_retries < 0:
            raise ValueError(f"MAX_RETRIES cannot be negative. Got {self.max_retries}.")
        if self.retry_base_delay < 0:
            raise ValueError(f"RETRY_BASE_DELAY cannot be negative. Got {self.retry_base_delay}.")

    def _validate_connection_string(self) -> None:
        """Check the connection string's structure and account key before connecting."""
        parts = {}
        for segment in self.conn_str.strip().split(";"):
            segment = segment.strip()
            if not segment:
                continue
            key, sep, value = segment.partition("=")
            if not sep:
                raise ValueError(
                    f"Malformed AZURE_CONN_STR: segment '{segment}' has no '=' separator.\n{_PORTAL_HINT}"
                )
            # keep base64 '=' padding in the value
            parts[key.strip()] = value.strip()

        for required in ("AccountName", "AccountKey", "DefaultEndpointsProtocol"):
            if not parts.get(required):
                raise ValueError(f"AZURE_CONN_STR is missing the '{required}' field.\n{_PORTAL_HINT}")

        if parts["AccountName"] in ("your_account", "your_account_name"):
            raise ValueError(
                "AZURE_CONN_STR has a placeholder AccountName. "
                "Replace it with your real Azure Storage account name."
            )

        account_key = parts["AccountKey"]
        if account_key in ("your_account_key", "your_key"):
            raise ValueError(f"AZURE_CONN_STR has a placeholder AccountKey.\n{_PORTAL_HINT}")

        # Storage account keys are 64 random bytes, 88 base64 characters
        if len(account_key) < 40:
            raise ValueError(
                f"AZURE_CONN_STR AccountKey looks too short ({len(account_key)} chars); "
                f"it was likely truncated.\n{_PORTAL_HINT}"
            )
        padded = account_key + "=" * (-len(account_key) % 4)
        try:
            decoded = base64.b64decode(padded, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError(f"AZURE_CONN_STR AccountKey is not valid base64.\n{_PORTAL_HINT}")
        if len(decoded) != 64:
            raise ValueError(
                f"AZURE_CONN_STR AccountKey decoded to {len(decoded)} bytes (expected 64).\n{_PORTAL_HINT}"
            )

        if parts["DefaultEndpointsProtocol"].lower() != "https":
            raise ValueError(
                "AZURE_CONN_STR uses a non-HTTPS protocol. Set DefaultEndpointsProtocol=https."
            )


# ---------------------------------------------------------------------------
# Uploader core
# ---------------------------------------------------------------------------

class FileUploader:
    """Uploads a single file to Azure using the Block Blob pattern."""

    def __init__(
        self,
        cfg: Config,
        logger: logging.Logger,
        file_path: Path,
        container_name: str,
        blob_name: str,
    ) -> None:
        self.cfg = cfg
        self.logger = logger
        self.file_path = file_path
        self.container_name = container_name
        self.blob_name = blob_name
        self.error: Optional[BaseException] = None
        self.interrupted = False

    def _install_interrupt(self, session: UploadSession) -> dict:
        loop = asyncio.get_running_loop()

        def _handle_interrupt(signum, frame):  # type: ignore[override]
            self.logger.warning("Interrupt received. Cancelling in-flight chunks...")
            self.interrupted = True
            loop.call_soon_threadsafe(session.cancel)

        previous = {}
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, _handle_interrupt)
        return previous

    async def _ensure_container(self, svc: BlobServiceClient) -> None:
        container_client = svc.get_container_client(self.container_name)
        try:
            await container_client.create_container()
            self.logger.info(f"Created container '{self.container_name}'.")
        except ResourceExistsError:
            self.logger.debug(f"Container '{self.container_name}' already exists.")

    async def run(self) -> bool:
        """Execute the upload. Returns True on success."""
        file_size = self.file_path.stat().st_size
        chunks = split_file(self.file_path, self.cfg.chunk_size)
        total_chunks = len(chunks)

        self.logger.info(
            f"File : {self.file_path}  ({file_size:,} bytes / "
            f"{file_size / (1024**3):.3f} GiB)"
        )
        self.logger.info(
            f"Chunk: {self.cfg.chunk_size // (1024*1024)} MB  |  "
            f"Chunks: {total_chunks}  |  "
            f"Concurrency: {self.cfg.concurrency}  |  "
            f"Retries: {self.cfg.max_retries}"
        )
        self.logger.info(f"Target: {self.container_name}/{self.blob_name}")

        async with BlobServiceClient.from_connection_string(
            self.cfg.conn_str,
            connection_timeout=30,
            read_timeout=120,
        ) as svc:
            await self._ensure_container(svc)
            blob_client = svc.get_blob_client(self.container_name, self.blob_name)
            transport = AzureBlockTransport(blob_client, logger=self.logger)

            t0 = time.monotonic()

            def on_progress(pct: float) -> None:
                elapsed = max(time.monotonic() - t0, 0.001)
                rate = transport.bytes_staged / elapsed
                eta_s = (file_size - transport.bytes_staged) / rate if rate else 0
                self.logger.info(
                    f"[{pct:5.1f}%] {session.state.completed_count}/{total_chunks} chunks  "
                    f"speed={rate / (1024 * 1024):.1f} MB/s  eta={_fmt_seconds(eta_s)}"
                )

            def on_fail(error: BaseException) -> None:
                self.error = error
                self.logger.error(f"Fatal: chunk upload gave up — {error}")

            session = UploadSession(
                chunks,
                transport,
                max_concurrency=self.cfg.concurrency,
                retry_budget=self.cfg.max_retries,
                on_progress=on_progress,
                on_fail=on_fail,
                on_succeed=lambda: self.logger.info("All chunks staged."),
                retry_delay=exponential_backoff(self.cfg.retry_base_delay),
                cancel_on_failure=True,
                logger=self.logger,
            )

            previous = self._install_interrupt(session)
            try:
                session.start()
                phase = await session.wait()
            finally:
                for sig, handler in previous.items():
                    signal.signal(sig, handler)

            if phase is SessionPhase.CANCELED:
                self.logger.warning("Upload canceled — nothing was committed.")
                return False
            if phase is not SessionPhase.SUCCEEDED:
                return False

            metadata = {
                "uploaded_by": "chunked_upload",
                "uploaded_at": datetime.now(timezone.utc).isoformat(),
                "original_filename": self.file_path.name,
                "file_size_bytes": str(file_size),
            }
            try:
                await transport.commit(total_chunks, metadata, _guess_content_type(self.file_path))
            except Exception as exc:
                self.error = exc
                self.logger.error(f"Commit failed: {exc}")
                return False

        self.logger.info(
            f"Committed '{self.blob_name}' to container '{self.container_name}'."
        )
        return True


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt_seconds(s: float) -> str:
    if s <= 0:
        return "--:--"
    s = int(s)
    h, rem = divmod(s, 3600)
    m, sec = divmod(rem, 60)
    if h:
        return f"{h}h{m:02d}m{sec:02d}s"
    if m:
        return f"{m}m{sec:02d}s"
    return f"{sec}s"


_CONTENT_TYPES = {
    ".csv": "text/csv",
    ".json": "application/json",
    ".zip": "application/zip",
    ".gz": "application/gzip",
    ".tar": "application/x-tar",
    ".txt": "text/plain",
    ".tsv": "text/tab-separated-values",
    ".mp4": "video/mp4",
}


def _guess_content_type(path: Path) -> str:
    return _CONTENT_TYPES.get(path.suffix.lower(), "application/octet-stream")


def _parse_args(argv: Optional[list[str]] = None):
    import argparse

    parser = argparse.ArgumentParser(
        prog="chunked-upload",
        description=(
            "Upload a file or an entire directory tree to Azure Blob Storage "
            "with chunked, concurrency-bounded transfers."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  # Upload a single file\n"
            "  python -m chunked_upload report.csv\n\n"
            "  # Upload all files in a directory (recursively)\n"
            "  python -m chunked_upload /data/exports my-container\n\n"
            "  # Upload directory with a virtual folder prefix in Azure\n"
            "  python -m chunked_upload /data/exports my-container --blob-prefix 2024/q1\n\n"
            "  # Dry run — validate config without uploading\n"
            "  python -m chunked_upload /data/exports --dry-run\n"
        ),
    )
    parser.add_argument(
        "path",
        help="Path to a file or directory to upload. Directories are walked recursively.",
    )
    parser.add_argument(
        "container_name",
        nargs="?",
        default=None,
        help="Target Azure container name. Overrides CONTAINER_NAME in .env.",
    )
    parser.add_argument(
        "--blob-prefix",
        default="",
        metavar="PREFIX",
        help="Optional prefix (virtual folder) prepended to every blob name.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate config and list files that would be uploaded, without uploading.",
    )
    args = parser.parse_args(argv)
    return args.path, args.container_name, args.blob_prefix.strip("/"), args.dry_run


# ---------------------------------------------------------------------------
# Directory helpers
# ---------------------------------------------------------------------------

def _collect_files(root: Path) -> list[Path]:
    """Return all files under root, sorted for deterministic order."""
    return sorted(f for f in root.rglob("*") if f.is_file())


def _make_blob_name(file: Path, root: Path, prefix: str) -> str:
    """
    Compute the blob name for a file relative to root, with optional prefix.

    Example:
        root   = /data/exports
        file   = /data/exports/subdir/report.csv
        prefix = 2024/q1
        result = 2024/q1/subdir/report.csv
    """
    blob = file.relative_to(root).as_posix()
    if prefix:
        blob = f"{prefix}/{blob}"
    return blob


def _plan_uploads(input_path: Path, blob_prefix: str) -> list[tuple[Path, str]]:
    if input_path.is_file():
        blob_name = f"{blob_prefix}/{input_path.name}" if blob_prefix else input_path.name
        return [(input_path, blob_name)]
    return [(f, _make_blob_name(f, input_path, blob_prefix)) for f in _collect_files(input_path)]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> None:
    path_arg, container_arg, blob_prefix, dry_run = _parse_args(argv)

    try:
        cfg = Config()
    except KeyError:
        print(
            "ERROR: AZURE_CONN_STR not set. Copy .env.template to .env and fill in your credentials.",
            file=sys.stderr,
        )
        sys.exit(1)
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    log_dir = Path(cfg.log_path) if cfg.log_path else Path.cwd() / "logs"
    logger = _build_logger(log_dir)

    logger.info("=" * 60)
    logger.info("  Chunked Upload — Azure Large File Uploader")
    logger.info("=" * 60)

    container_name = container_arg or cfg.container_name
    if not container_name:
        logger.error(
            "No container name provided. Pass as argument or set CONTAINER_NAME in .env."
        )
        sys.exit(1)

    input_path = Path(path_arg).expanduser().resolve()
    if not input_path.exists():
        logger.error(f"Path not found: {input_path}")
        sys.exit(1)
    if not (input_path.is_file() or input_path.is_dir()):
        logger.error(f"Path is neither a file nor a directory: {input_path}")
        sys.exit(1)

    files = _plan_uploads(input_path, blob_prefix)
    if not files:
        logger.error(f"Directory is empty (no files found): {input_path}")
        sys.exit(1)

    total_files = len(files)
    total_bytes = sum(f.stat().st_size for f, _ in files)

    logger.info(f"Mode      : {'single file' if input_path.is_file() else 'directory'}")
    logger.info(f"Source    : {input_path}")
    logger.info(f"Container : {container_name}")
    if blob_prefix:
        logger.info(f"Prefix    : {blob_prefix}/")
    logger.info(f"Files     : {total_files:,}  ({total_bytes / (1024**3):.3f} GiB total)")
    logger.info(f"Chunk     : {cfg.chunk_size // (1024 * 1024)} MB  |  Concurrency: {cfg.concurrency}")

    if dry_run:
        logger.info("[DRY RUN] Files that would be uploaded:")
        for i, (fp, bn) in enumerate(files, 1):
            logger.info(f"  [{i:>{len(str(total_files))}}] {fp.stat().st_size:>14,} bytes  →  {bn}")
        logger.info("[DRY RUN] No files were uploaded.")
        sys.exit(0)

    succeeded: list[str] = []
    failed: list[tuple[str, str]] = []  # (blob_name, reason)

    # Files go one at a time; each file already uploads its chunks concurrently
    for file_num, (file_path, blob_name) in enumerate(files, 1):
        logger.info("")
        logger.info(f"[{file_num}/{total_files}] {file_path.name}  →  {blob_name}")

        uploader = FileUploader(
            cfg=cfg,
            logger=logger,
            file_path=file_path,
            container_name=container_name,
            blob_name=blob_name,
        )

        try:
            success = asyncio.run(uploader.run())
            reason = str(uploader.error) if uploader.error else "upload incomplete"
        except Exception as exc:
            success = False
            reason = str(exc)

        if success:
            succeeded.append(blob_name)
        else:
            failed.append((blob_name, reason))
        if uploader.interrupted:
            logger.warning("Interrupted — remaining files were not uploaded.")
            failed.extend((bn, "interrupted") for _, bn in files[file_num:])
            break
        if not success:
            logger.warning(f"File failed: {file_path.name} — continuing with remaining files.")

    logger.info("")
    logger.info("=" * 60)
    logger.info(f"  Summary: {len(succeeded)}/{total_files} files uploaded successfully")
    if failed:
        logger.warning(f"  {len(failed)} file(s) did not complete:")
        for bn, reason in failed:
            logger.warning(f"    - {bn}  ({reason})")
    logger.info("=" * 60)

    if failed:
        sys.exit(2)
    print(f"\nAll {total_files} file(s) uploaded successfully.")
    sys.exit(0)


if __name__ == "__main__":
    main()
