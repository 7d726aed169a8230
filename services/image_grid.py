"""
Image grid utilities: slicing storyboard composites into panels, stitching
panels back into a composite, and downscaling frames before video submission.
"""

import base64
import logging
from io import BytesIO

from PIL import Image

from .providers.base import GridSpec, InlineBinaryPart

logger = logging.getLogger(__name__)

ImageSource = bytes | str | Image.Image | InlineBinaryPart


def load_image(source: ImageSource) -> Image.Image:
    """
    Open an image from bytes, a data URI, bare base64, an inline part or a PIL image.
    """
    if isinstance(source, Image.Image):
        return source
    if isinstance(source, InlineBinaryPart):
        return Image.open(BytesIO(source.to_bytes()))
    if isinstance(source, str):
        return Image.open(BytesIO(InlineBinaryPart.from_data_uri(source).to_bytes()))
    return Image.open(BytesIO(source))


def image_to_bytes(image: Image.Image, format: str = "PNG", quality: int = 95) -> bytes:
    """Encode a PIL image."""
    buffer = BytesIO()
    save_kwargs = {}
    if format.upper() in ("JPEG", "JPG"):
        save_kwargs["quality"] = quality
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
    image.save(buffer, format=format.upper(), **save_kwargs)
    return buffer.getvalue()


def bytes_to_data_uri(data: bytes, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def slice_grid(source: ImageSource, rows: int, cols: int) -> list[bytes]:
    """
    Cut a composite grid image into rows × cols PNG panels.

    Panel size is ``width // cols`` by ``height // rows``; remainder pixels on
    the right and bottom edges are dropped. Panels are returned row-major.

    Raises:
        ValueError: rows/cols below 1, or the image is smaller than the grid
    """
    grid = GridSpec(rows=rows, cols=cols)
    image = load_image(source)
    width, height = image.size

    piece_w = width // grid.cols
    piece_h = height // grid.rows
    if piece_w == 0 or piece_h == 0:
        raise ValueError(f"Image {width}x{height} is too small for a {rows}x{cols} grid")

    panels = []
    for row in range(grid.rows):
        for col in range(grid.cols):
            box = (col * piece_w, row * piece_h, (col + 1) * piece_w, (row + 1) * piece_h)
            panels.append(image_to_bytes(image.crop(box), "PNG"))

    logger.debug(f"[Grid] Sliced {width}x{height} into {len(panels)} panels of {piece_w}x{piece_h}")
    return panels


def slice_grid_to_data_uris(source: ImageSource, rows: int, cols: int) -> list[str]:
    """``slice_grid`` returning PNG data URIs."""
    return [bytes_to_data_uri(panel) for panel in slice_grid(source, rows, cols)]


def stitch_grid(images: list[ImageSource], rows: int, cols: int) -> bytes:
    """
    Compose panels into one JPEG grid.

    Every cell takes the size of the first panel; missing cells stay black and
    extra images are ignored.
    """
    if not images:
        raise ValueError("No images to stitch")
    grid = GridSpec(rows=rows, cols=cols)

    panels = [load_image(img) for img in images[: grid.count]]
    piece_w, piece_h = panels[0].size
    canvas = Image.new("RGB", (piece_w * grid.cols, piece_h * grid.rows), color="black")

    for index, panel in enumerate(panels):
        row, col = divmod(index, grid.cols)
        if panel.size != (piece_w, piece_h):
            panel = panel.resize((piece_w, piece_h))
        canvas.paste(panel.convert("RGB"), (col * piece_w, row * piece_h))

    return image_to_bytes(canvas, "JPEG", quality=95)


def resize_to_width(source: ImageSource, max_width: int = 1024) -> InlineBinaryPart:
    """
    Downscale an image so its width is at most ``max_width``, as JPEG.

    Aspect ratio is preserved. Inline parts already narrow enough are
    returned unchanged.
    """
    image = load_image(source)
    width, height = image.size
    if width <= max_width and isinstance(source, InlineBinaryPart):
        return source

    if width > max_width:
        new_height = max(1, round(height * max_width / width))
        image = image.resize((max_width, new_height), Image.Resampling.LANCZOS)
        logger.debug(f"[Resize] {width}x{height} -> {max_width}x{new_height}")

    return InlineBinaryPart.from_bytes(image_to_bytes(image, "JPEG", quality=92), "image/jpeg")
