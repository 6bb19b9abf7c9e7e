import cv2 # type: ignore
import numpy as np # type: ignore

# OpenCV's detector never retries on an inverted image, which keeps it cheap.
QR_DETECTOR = cv2.QRCodeDetector()


def decode_frame(frame: np.ndarray) -> str | None:
    """
    Returns the text of the first QR code found in a BGR or grayscale frame,
    or None when the frame holds no readable code.
    """
    if frame is None or frame.size == 0:
        return None

    text, points, _ = QR_DETECTOR.detectAndDecode(frame)
    if points is None or not text:
        return None
    return text
