"""Image processor: bounded-concurrency identify and thumbnail jobs.

Identify calls run on their own pool and are awaited by the caller;
thumbnails run on a second pool and are fire-and-forget.
"""

import logging
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from pathlib import Path

from ..constants import DEFAULT_MAX_CONCURRENT_IDENTIFY, DEFAULT_MAX_CONCURRENT_OTHER, THUMBNAIL_SIZE
from ..exceptions import ProcessError
from ..models import PictureInfo
from ..services.image_tools import ImageTool
from ..utils.image import bucket_path

logger = logging.getLogger(__name__)


class ImageProcessor:
    """Runs an ImageTool on two thread pools.

    Example:
        >>> processor = ImageProcessor(PillowTool(), Path("./thumbnails"))
        >>> info = processor.identify(Path("photo.jpg"))
        >>> processor.create_thumbnail(picture_id, stored_path)
    """

    def __init__(
        self,
        tool: ImageTool,
        thumbnail_root: Path,
        thumbnail_size: int = THUMBNAIL_SIZE,
        max_concurrent_identify: int = DEFAULT_MAX_CONCURRENT_IDENTIFY,
        max_concurrent_other: int = DEFAULT_MAX_CONCURRENT_OTHER,
    ):
        self.tool = tool
        self.thumbnail_root = Path(thumbnail_root)
        self.thumbnail_size = thumbnail_size
        self._identify_pool = ThreadPoolExecutor(
            max_workers=max_concurrent_identify,
            thread_name_prefix="pb-identify",
        )
        self._work_pool = ThreadPoolExecutor(
            max_workers=max_concurrent_other,
            thread_name_prefix="pb-work",
        )
        self._closed = False

    def thumbnail_path(self, picture_id: str) -> Path:
        return bucket_path(self.thumbnail_root, picture_id)

    def identify(self, path: Path) -> PictureInfo:
        """Identify a picture on the identify pool, waiting for the result.

        Raises:
            ProcessError: If the tool fails or the pool is shut down
        """
        try:
            future = self._identify_pool.submit(self.tool.identify, path)
        except RuntimeError as e:
            raise ProcessError(f"Image processor is shut down: {e}") from e
        try:
            return future.result()
        except ProcessError:
            raise
        except CancelledError as e:
            raise ProcessError(f"Identify of {path} was cancelled") from e
        except Exception as e:
            raise ProcessError(f"Identify of {path} failed: {e}") from e

    def create_thumbnail(self, picture_id: str, source: Path) -> Future:
        """Queue thumbnail creation.

        Idempotent: nothing is rendered if the thumbnail already exists.
        The returned future resolves to True when a thumbnail was written,
        False otherwise; failures are logged, never raised.
        """
        destination = self.thumbnail_path(picture_id)
        if destination.exists() or self._closed:
            done: Future = Future()
            done.set_result(False)
            return done
        try:
            return self._work_pool.submit(self._render, picture_id, Path(source), destination)
        except RuntimeError as e:
            logger.warning(f"Thumbnail of {picture_id} not queued: {e}")
            done = Future()
            done.set_result(False)
            return done

    def _render(self, picture_id: str, source: Path, destination: Path) -> bool:
        if destination.exists():
            return False
        try:
            self.tool.make_thumbnail(source, destination, self.thumbnail_size)
        except Exception as e:
            logger.error(f"Thumbnail of {picture_id} failed: {e}")
            return False
        logger.debug(f"Thumbnail written: {destination}")
        return True

    def shutdown(self) -> None:
        """Cancel queued jobs and wait for running ones."""
        self._closed = True
        self._identify_pool.shutdown(wait=True, cancel_futures=True)
        self._work_pool.shutdown(wait=True, cancel_futures=True)
