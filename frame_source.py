"""Frame sources for the analysis poller.

A frame source answers capture_frame() with the current camera frame as a
base64 JPEG string, or None when no frame is available (camera closed, not
ready, read failed). The poller treats None as "skip this tick".
"""

import base64
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class FrameSource:
    """Base frame source: never has a frame."""

    def open(self) -> bool:
        return True

    def close(self):
        pass

    def capture_frame(self) -> str | None:
        return None


@dataclass
class CameraConfig:
    device: int = 0
    width: int = 640
    height: int = 360
    jpeg_quality: int = 55
    warmup_frames: int = 3


class CameraFrameSource(FrameSource):
    """OpenCV webcam capture, downscaled and JPEG-encoded per request."""

    def __init__(self, config: CameraConfig | None = None):
        self.config = config or CameraConfig()
        self._cap = None
        self._cv2 = None

    @property
    def is_open(self) -> bool:
        return self._cap is not None and self._cap.isOpened()

    def open(self) -> bool:
        try:
            import cv2
        except ImportError:
            logger.error("OpenCV not installed. Install with: pip install live-coach[vision]")
            return False

        self._cv2 = cv2
        try:
            self._cap = cv2.VideoCapture(self.config.device)
            if not self._cap.isOpened():
                logger.error("Failed to open camera device %s", self.config.device)
                self._cap = None
                return False

            self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.config.width)
            self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.config.height)
            for _ in range(self.config.warmup_frames):
                self._cap.read()

            logger.info("Camera ready: device=%s", self.config.device)
            return True
        except Exception as e:
            logger.error("Camera error: %s", e)
            self._cap = None
            return False

    def close(self):
        if self._cap is not None:
            self._cap.release()
            self._cap = None

    def capture_frame(self) -> str | None:
        if not self.is_open:
            return None

        cv2 = self._cv2
        ok, frame = self._cap.read()
        if not ok or frame is None:
            return None

        height, width = frame.shape[:2]
        if width != self.config.width or height != self.config.height:
            frame = cv2.resize(frame, (self.config.width, self.config.height))

        ok, buffer = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, self.config.jpeg_quality])
        if not ok:
            return None
        return base64.b64encode(buffer.tobytes()).decode("ascii")

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *exc):
        self.close()
