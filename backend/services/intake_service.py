"""
Intake Service

Owns the lifecycle of a single receipt scan:
  - a deterministic fingerprint per uploaded file
  - an in-flight registry so the same file is never scanned twice at once
  - the scan state machine (idle → scanning → complete | timed_out | errored)
  - temporary preview files, released exactly once per scan

The registry and preview store are plain objects owned by the app (see
main.py) rather than module globals, so tests can build isolated instances.
"""
import logging
import os
import time
import uuid
from typing import Callable, Optional

logger = logging.getLogger("pocketbook.intake")

PREVIEW_DIR = os.environ.get("IMAGE_DIR", "/data/images")
PREVIEW_MAX_AGE_SECONDS = float(os.environ.get("PREVIEW_MAX_AGE_SECONDS", "1800"))

IDLE = "idle"
SCANNING = "scanning"
TIMED_OUT = "timed_out"
ERRORED = "errored"
COMPLETE = "complete"


def file_fingerprint(name: str, size: int, last_modified: int) -> str:
    """Cheap identity for an upload: same name, size and mtime → same file."""
    return f"{name}-{size}-{last_modified}"


class ScanFile:
    def __init__(self, content: bytes, filename: str,
                 media_type: str = "image/jpeg", last_modified: int = 0):
        self.content = content
        self.filename = filename or "receipt"
        self.media_type = media_type
        self.last_modified = last_modified

    @property
    def size(self) -> int:
        return len(self.content)


class ScanRequest:
    """One user-initiated attempt to turn an image into expenses."""

    def __init__(self, file: ScanFile):
        self.file = file
        self.fingerprint = file_fingerprint(file.filename, file.size, file.last_modified)
        # unique per upload; the fingerprint is not (same name, size and mtime)
        self.scan_id = uuid.uuid4().hex
        self.state = IDLE
        self.progress = 0
        self.status_message = ""
        # OCR/plain text recovered by an earlier strategy, reused by later ones
        self.raw_text: Optional[str] = None


class InFlightRegistry:
    """Fingerprints currently being scanned.  Both operations are idempotent."""

    def __init__(self):
        self._in_flight: set[str] = set()

    def try_acquire(self, fingerprint: str) -> bool:
        if fingerprint in self._in_flight:
            return False
        self._in_flight.add(fingerprint)
        return True

    def release(self, fingerprint: str) -> None:
        self._in_flight.discard(fingerprint)

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._in_flight

    def __len__(self) -> int:
        return len(self._in_flight)


class PreviewStore:
    """
    Temporary preview images shown while a scan runs.

    Every acquire() is paired with exactly one release().  sweep() removes
    anything older than max_age_seconds that was never released (or whose
    removal failed). It is a backstop only.
    """

    def __init__(self, directory: Optional[str] = None,
                 max_age_seconds: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.directory = directory or PREVIEW_DIR
        self.max_age_seconds = PREVIEW_MAX_AGE_SECONDS if max_age_seconds is None else max_age_seconds
        self._clock = clock
        self._created: dict[str, float] = {}

    def acquire(self, image_bytes: bytes, suffix: str = ".jpg") -> str:
        os.makedirs(self.directory, exist_ok=True)
        path = os.path.join(self.directory, f"preview_{uuid.uuid4()}{suffix}")
        with open(path, "wb") as f:
            f.write(image_bytes)
        self._created[path] = self._clock()
        return path

    def release(self, path: Optional[str]) -> bool:
        """Delete a preview.  Returns False if it was already released or removal failed."""
        if not path or path not in self._created:
            return False
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove preview %s (%s), left for sweep", path, e)
            return False
        del self._created[path]
        return True

    def sweep(self, max_age_seconds: Optional[float] = None) -> int:
        """Remove previews older than max_age_seconds.  Returns how many were dropped."""
        max_age = self.max_age_seconds if max_age_seconds is None else max_age_seconds
        now = self._clock()
        stale = [p for p, created in self._created.items() if now - created >= max_age]
        for path in stale:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Sweep could not remove preview %s (%s)", path, e)
            # drop from the registry either way so it cannot leak
            del self._created[path]
        if stale:
            logger.info("Swept %d stale preview(s)", len(stale))
        return len(stale)

    def __contains__(self, path: str) -> bool:
        return path in self._created

    def __len__(self) -> int:
        return len(self._created)


class ScanSession:
    """
    Drives one ScanRequest through the scan state machine.

    start() claims the fingerprint; complete(), error() and cancel() end the
    scan and release it.  release() is safe to call from every exit path;
    only the first call has any effect.
    """

    def __init__(self, request: ScanRequest, registry: InFlightRegistry,
                 previews: Optional[PreviewStore] = None,
                 on_progress: Optional[Callable[[int, str], None]] = None):
        self.request = request
        self.registry = registry
        self.previews = previews
        self.on_progress = on_progress
        self.preview_path: Optional[str] = None
        self.cancelled = False
        self._acquired = False
        self._released = False

    @property
    def fingerprint(self) -> str:
        return self.request.fingerprint

    @property
    def state(self) -> str:
        return self.request.state

    @property
    def is_active(self) -> bool:
        """True while this session still holds its fingerprint."""
        return self._acquired and not self._released

    def _set(self, state: str, message: Optional[str] = None) -> None:
        self.request.state = state
        if message is not None:
            self.request.status_message = message

    def start(self) -> bool:
        if self.request.state == COMPLETE:
            logger.info("Scan %s already complete, ignoring", self.fingerprint)
            return False
        if not self.registry.try_acquire(self.fingerprint):
            logger.info("Scan %s already in flight, ignoring duplicate", self.fingerprint)
            return False
        self._acquired = True
        self.request.progress = 0
        self._set(SCANNING, "Preparing receipt...")
        if self.previews is not None:
            try:
                self.preview_path = self.previews.acquire(self.request.file.content)
            except OSError as e:
                logger.warning("Could not write preview for %s: %s", self.fingerprint, e)
        return True

    def update_progress(self, value: int, message: Optional[str] = None) -> None:
        """Advance progress (never backwards, clamped to 0–100) while scanning."""
        if self.request.state != SCANNING:
            return
        value = max(0, min(100, int(value)))
        self.request.progress = max(self.request.progress, value)
        if message:
            self.request.status_message = message
        if self.on_progress:
            self.on_progress(self.request.progress, self.request.status_message)

    def timeout(self) -> None:
        if self.request.state == SCANNING:
            self._set(TIMED_OUT, "Receipt scan timed out")

    def fail_attempt(self, message: str) -> None:
        """Mark the current attempt failed without ending the scan (a retry may follow)."""
        if self.request.state == SCANNING:
            self._set(ERRORED, message)

    def retry(self) -> bool:
        if not self.is_active or self.request.state not in (TIMED_OUT, ERRORED):
            return False
        self.request.progress = 0
        self._set(SCANNING, "Retrying scan...")
        return True

    def complete(self) -> None:
        if self.cancelled or self.request.state == COMPLETE:
            return
        self.request.progress = 100
        self._set(COMPLETE)
        self.release()

    def error(self, message: str) -> None:
        if self.cancelled or self.request.state == COMPLETE:
            return
        self._set(ERRORED, message)
        self.release()

    def cancel(self) -> None:
        if self.request.state not in (COMPLETE, IDLE):
            self._set(ERRORED, "Scan cancelled")
        self.cancelled = True
        self.release()

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        if self._acquired:
            self.registry.release(self.fingerprint)
        if self.previews is not None and self.preview_path:
            self.previews.release(self.preview_path)
