from __future__ import annotations

import io
import textwrap

from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

from discovery_worker.errors import CorruptInput

PAGE_SIZE = (1240, 1754)
PAGE_MARGIN = 80
LINE_HEIGHT = 22
WRAP_COLUMNS = 150
RENDER_RESOLUTION = 150.0


def _paginate(text: str) -> list[list[str]]:
    wrapped: list[str] = []
    for line in text.splitlines() or [""]:
        wrapped.extend(textwrap.wrap(line, WRAP_COLUMNS, replace_whitespace=False) or [""])

    lines_per_page = max(1, (PAGE_SIZE[1] - 2 * PAGE_MARGIN) // LINE_HEIGHT)
    return [wrapped[start : start + lines_per_page] for start in range(0, len(wrapped), lines_per_page)]


def _save_pdf(pages: list[Image.Image]) -> bytes:
    buffer = io.BytesIO()
    first, *rest = pages
    first.save(buffer, format="PDF", save_all=True, append_images=rest, resolution=RENDER_RESOLUTION)
    return buffer.getvalue()


def text_to_pdf(text: str) -> bytes:
    """Typeset plain text onto fixed-size pages and return a PDF."""

    font = ImageFont.load_default()
    pages = []
    for page_lines in _paginate(text):
        page = Image.new("RGB", PAGE_SIZE, "white")
        draw = ImageDraw.Draw(page)
        for index, line in enumerate(page_lines):
            draw.text((PAGE_MARGIN, PAGE_MARGIN + index * LINE_HEIGHT), line, fill="black", font=font)
        pages.append(page)
    return _save_pdf(pages)


def image_to_pdf(content: bytes) -> bytes:
    try:
        with Image.open(io.BytesIO(content)) as image:
            frames = []
            for frame_index in range(getattr(image, "n_frames", 1)):
                image.seek(frame_index)
                frames.append(image.convert("RGB"))
    except (UnidentifiedImageError, OSError, ValueError, EOFError) as exc:
        raise CorruptInput(f"Image could not be rendered: {exc}") from exc
    return _save_pdf(frames)
