# flowguardian/utils.py
from io import BytesIO
import base64
import logging
from typing import List, Optional, Sequence, Tuple

from PIL import Image, ImageDraw, ImageFont

from flowguardian.exceptions import RenderError
from flowguardian.schemas import Detection

logger = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

STROKE_WIDTH = 5
STROKE_COLOR = (255, 0, 0, 255)
FILL_COLOR = (255, 0, 0, 38)  # red at 15% opacity
LABEL_COLOR = (255, 0, 0, 230)  # red at 90% opacity
TEXT_COLOR = (255, 255, 255, 255)
FONT_SIZE = 16

LABEL_CLEARANCE = 30  # labels go above a box only when y is past this
LABEL_HEIGHT = 22
JPEG_QUALITY = 95


def encode_image_base64(image_bytes: bytes) -> str:
    return base64.b64encode(image_bytes).decode("utf-8")


def decode_image_base64(data: str) -> bytes:
    return base64.b64decode(data)


def guess_mime_type(image_bytes: bytes) -> str:
    """Only PNG and JPEG are accepted upstream; anything else is sent as JPEG."""
    if image_bytes.startswith(PNG_SIGNATURE):
        return "image/png"
    return "image/jpeg"


def leak_label(index: int) -> str:
    return f"LEAK #{index}"


def _load_font(size: int = FONT_SIZE):
    try:
        return ImageFont.truetype("DejaVuSans-Bold.ttf", size)
    except OSError:
        return ImageFont.load_default()


def label_box(detection: Detection,
              index: int,
              canvas_size: Tuple[int, int],
              text_width: Optional[int] = None) -> Tuple[int, int, int, int]:
    """
    Box [left, top, right, bottom] of the "LEAK #index" label for a detection.

    The label sits above the rectangle when there is room, below it otherwise,
    and is shifted back inside the canvas if it would overflow an edge.
    """
    text = leak_label(index)
    if detection.y > LABEL_CLEARANCE:
        label_y = detection.y - 10
    else:
        label_y = detection.y + detection.height + 20

    width = len(text) * 10 + 10
    if text_width is not None:
        width = max(width, text_width + 10)

    canvas_w, canvas_h = canvas_size
    left = max(0, min(detection.x - 5, canvas_w - width))
    top = max(0, min(label_y - 18, canvas_h - LABEL_HEIGHT))
    return left, top, left + width, top + LABEL_HEIGHT


def build_overlay(canvas_size: Tuple[int, int], detections: Sequence[Detection]) -> Image.Image:
    """Draw every leak rectangle and label on one transparent layer."""
    overlay = Image.new("RGBA", canvas_size, (255, 255, 255, 0))
    draw = ImageDraw.Draw(overlay)
    font = _load_font()

    for index, detection in enumerate(detections, start=1):
        x, y, w, h = detection.x, detection.y, detection.width, detection.height
        logger.info(f"  Leak {index}: ({x}, {y}) {w}x{h}")
        draw.rectangle([x, y, x + w, y + h], fill=FILL_COLOR, outline=STROKE_COLOR, width=STROKE_WIDTH)

        text = leak_label(index)
        text_left, text_top, text_right, text_bottom = draw.textbbox((0, 0), text, font=font)
        box = label_box(detection, index, canvas_size, text_width=text_right - text_left)
        draw.rectangle(box, fill=LABEL_COLOR)

        text_y = box[1] + (LABEL_HEIGHT - (text_bottom - text_top)) // 2 - text_top
        draw.text((box[0] + 5, text_y), text, fill=TEXT_COLOR, font=font)

    return overlay


def render_annotations(image_bytes: bytes, detections: Sequence[Detection]) -> bytes:
    """Composite the leak overlay onto the image and return JPEG bytes."""
    try:
        with BytesIO(image_bytes) as bio:
            img = Image.open(bio)
            img.load()
        logger.info(f"Image dimensions: {img.width}x{img.height}")

        img = Image.alpha_composite(img.convert("RGBA"), build_overlay(img.size, detections))

        with BytesIO() as out_bio:
            img.convert("RGB").save(out_bio, format="JPEG", quality=JPEG_QUALITY)
            return out_bio.getvalue()
    except Exception as e:
        # Pillow raises SystemError/OverflowError on out-of-range coordinates
        raise RenderError(f"Could not annotate image: {e}") from e


def draw_leak_annotations(image_bytes: bytes, detections: List[Detection]) -> bytes:
    """Annotated JPEG bytes, or the original bytes if drawing fails."""
    try:
        annotated = render_annotations(image_bytes, detections)
    except RenderError as e:
        logger.error(f"Error drawing annotations: {e}")
        return image_bytes

    logger.info(f"Annotated image with {len(detections)} leak marking(s)")
    return annotated
