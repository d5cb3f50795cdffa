"""Stage work for the processing pipeline.

processing -> analyze_upload(): size, checksum and media type of the upload.
rendering  -> render_preview(): a PNG preview written next to the upload.
"""

import hashlib
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from PIL import Image, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError

CARD_SIZE = (640, 360)
CARD_BACKGROUND = (24, 24, 32)
CARD_FOREGROUND = (235, 235, 235)


@dataclass
class UploadAnalysis:
    size_bytes: int
    checksum: str
    media_type: str
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def is_image(self) -> bool:
        return self.width is not None


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def analyze_upload(path: Path, filename: Optional[str] = None) -> UploadAnalysis:
    path = Path(path)
    analysis = UploadAnalysis(
        size_bytes=path.stat().st_size,
        checksum=_sha256(path),
        media_type=mimetypes.guess_type(filename or path.name)[0] or "application/octet-stream",
    )
    try:
        with Image.open(path) as img:
            img.verify()
            analysis.width, analysis.height = img.size
            analysis.media_type = Image.MIME.get(img.format, analysis.media_type)
    except (UnidentifiedImageError, OSError, SyntaxError):
        # Not an image (or a broken one); keep the guessed type.
        analysis.width = analysis.height = None
    return analysis


def _human_size(num: int) -> str:
    size = float(num)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024 or unit == "GiB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{num} B"


def _render_card(lines, output_path: Path) -> None:
    card = Image.new("RGB", CARD_SIZE, CARD_BACKGROUND)
    draw = ImageDraw.Draw(card)
    font = ImageFont.load_default()
    y = 32
    for line in lines:
        # The bitmap fallback font only covers latin-1.
        line = line.encode("latin-1", "replace").decode("latin-1")
        draw.text((32, y), line, fill=CARD_FOREGROUND, font=font)
        y += 28
    card.save(output_path, format="PNG")


def render_preview(path: Path, analysis: UploadAnalysis, output_path: Path, max_edge: int = 1024,
                   filename: Optional[str] = None) -> Path:
    """Write the preview PNG for an upload and return its path.

    Images are scaled down to fit `max_edge`; anything else gets an
    information card describing the file.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    if analysis.is_image:
        with Image.open(path) as img:
            img = ImageOps.exif_transpose(img)
            img = img.convert("RGB")
            img.thumbnail((max_edge, max_edge))
            img.save(output_path, format="PNG")
        return output_path

    _render_card(
        [
            filename or Path(path).name,
            f"type: {analysis.media_type}",
            f"size: {_human_size(analysis.size_bytes)}",
            f"sha256: {analysis.checksum[:32]}",
            f"        {analysis.checksum[32:]}",
        ],
        output_path,
    )
    return output_path
