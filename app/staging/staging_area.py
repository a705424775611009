import shutil
import tempfile
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from app.logging.logger import Log
from app.uploads.exceptions import StagingError

STAGING_PREFIX = "file-uploader-"


@dataclass(frozen=True)
class StagedPayload:
    """Handle to a payload copied into its own private staging directory."""

    path: Path
    directory: Path
    size_bytes: int

    def open(self) -> BinaryIO:
        """Open the staged bytes for reading. May be called repeatedly.

        Raises:
            StagingError: if the staged file cannot be opened.
        """
        try:
            return self.path.open("rb")
        except OSError as exc:
            raise StagingError(f"Cannot read staged payload {self.path}: {exc}") from exc


class StagingArea:
    """Holds uploaded payloads on local disk between intake and transfer."""

    def __init__(self, root: Path | None = None) -> None:
        self._root = root
        if root is not None:
            root.mkdir(parents=True, exist_ok=True)

    def stage(self, payload: BinaryIO) -> StagedPayload:
        """Copy the payload stream into a new private staging directory.

        Raises:
            StagingError: if the payload cannot be written. Nothing is left on
                disk in that case.
        """
        directory: Path | None = None
        try:
            directory = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=self._root))
            path = directory / uuid.uuid4().hex
            with path.open("wb") as target:
                shutil.copyfileobj(payload, target)
            size = path.stat().st_size
        except (OSError, ValueError) as exc:
            if directory is not None:
                shutil.rmtree(directory, ignore_errors=True)
            raise StagingError(f"Cannot stage payload: {exc}") from exc

        Log.debug(f"Staged {size} bytes at {path}")
        return StagedPayload(path=path, directory=directory, size_bytes=size)

    def release(self, handle: StagedPayload | None) -> None:
        """Delete the staged file and its directory.

        Safe for None, for partially staged handles and for handles that were
        already released.
        """
        if handle is None:
            return
        try:
            handle.path.unlink(missing_ok=True)
            handle.directory.rmdir()
        except FileNotFoundError:
            pass
        except OSError as exc:
            Log.warning(f"Could not remove staging directory {handle.directory}: {exc}")
            shutil.rmtree(handle.directory, ignore_errors=True)
            return
        Log.debug(f"Released staged payload {handle.path}")

    @contextmanager
    def staged(self, handle: StagedPayload) -> Generator[StagedPayload, None, None]:
        """Yield the handle and release it on exit, however the block ends."""
        try:
            yield handle
        finally:
            self.release(handle)
