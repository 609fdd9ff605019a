"""
Clipboard access and the clipboard watch loop.

Images are read with Pillow's ImageGrab and handed around as PNG bytes;
text goes back to the clipboard through pyperclip.
"""

import hashlib
import io
import logging
import queue
import threading
from typing import Optional

import pyperclip
from PIL import Image, ImageGrab
from plyer import notification

from .config import CHECK_INTERVAL
from .errors import NoImageAvailableError, SnaptoError
from .uploaders import UploadResult

logger = logging.getLogger(__name__)

APP_NAME = "SnapTo"
WATCH_QUEUE_SIZE = 10


def image_to_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def image_hash(data: bytes) -> str:
    """MD5 of the encoded image, used to spot duplicates."""
    return hashlib.md5(data).hexdigest()


class ClipboardSource:
    """Reads images from and writes text to the system clipboard."""

    def get_image(self) -> bytes:
        try:
            image = ImageGrab.grabclipboard()
        except (OSError, NotImplementedError) as e:
            logger.debug("Clipboard grab failed: %s", e)
            raise NoImageAvailableError() from e
        if not isinstance(image, Image.Image):
            raise NoImageAvailableError()
        return image_to_png(image)

    def set_text(self, text: str):
        try:
            pyperclip.copy(text)
        except pyperclip.PyperclipException as e:
            raise SnaptoError(f"Failed to copy to clipboard: {e}") from e


def clipboard_text_for(result: UploadResult, mode: str) -> Optional[str]:
    """Text to put on the clipboard after an upload, or None to leave it alone."""
    if mode == "path":
        return result.remote_path
    if mode == "url":
        return result.url
    return result.url or result.remote_path


def notify(title: str, message: str):
    """Show a desktop notification; failures only get logged."""
    try:
        notification.notify(title=title, message=message, app_name=APP_NAME, timeout=3)
    except Exception as e:
        logger.debug("Notification failed: %s", e)


class WatchChannel:
    """Bounded queue of new clipboard images. Closing it stops the watcher."""

    def __init__(self, maxsize: int = WATCH_QUEUE_SIZE):
        self._queue: "queue.Queue[bytes]" = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self):
        self._closed.set()

    def wait_closed(self, timeout: float) -> bool:
        return self._closed.wait(timeout)

    def put(self, data: bytes, poll: float = 0.1) -> bool:
        """Block until there is room or the channel is closed."""
        while not self.closed:
            try:
                self._queue.put(data, timeout=poll)
                return True
            except queue.Full:
                continue
        return False

    def poll(self) -> Optional[bytes]:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def get(self, timeout: Optional[float] = None) -> Optional[bytes]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None


class ClipboardWatcher:
    """Polls the clipboard on a background thread and publishes changed images."""

    def __init__(self, source: Optional[ClipboardSource] = None, interval: float = CHECK_INTERVAL,
                 maxsize: int = WATCH_QUEUE_SIZE):
        self.source = source or ClipboardSource()
        self.interval = interval
        self.maxsize = maxsize
        self.last_image_hash: Optional[str] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> WatchChannel:
        channel = WatchChannel(self.maxsize)
        self._thread = threading.Thread(target=self.run, args=(channel,), name="snapto-watch", daemon=True)
        self._thread.start()
        logger.info("Started clipboard watch (every %.0f ms)", self.interval * 1000)
        return channel

    def join(self, timeout: Optional[float] = None):
        if self._thread is not None:
            self._thread.join(timeout)

    def process_clipboard(self, channel: WatchChannel):
        """Check the clipboard once and publish the image if it changed."""
        try:
            data = self.source.get_image()
        except NoImageAvailableError:
            return

        current_hash = image_hash(data)
        if current_hash == self.last_image_hash:
            return
        self.last_image_hash = current_hash
        logger.debug("New clipboard image %s (%d bytes)", current_hash, len(data))
        channel.put(data)

    def run(self, channel: WatchChannel):
        """Main loop - stops once the channel is closed."""
        while not channel.closed:
            self.process_clipboard(channel)
            if channel.wait_closed(self.interval):
                break
        logger.info("Clipboard watch stopped")
