import io
import logging
import os
import uuid

from PIL import Image, UnidentifiedImageError

from Models.storedFileModel import StoredFile
from Utils.appError import ValidationFailed
from Utils.identifiers import utcnow

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 5 * 1024 * 1024
PHOTO_TYPES = ("image/jpeg", "image/png", "image/jpg")
DOCUMENT_TYPES = PHOTO_TYPES + ("application/pdf",)
PLACEHOLDER_GRID = (4, 3)


def compute_placeholder(data: bytes) -> str | None:
    """Tiny colour grid of an image, e.g. ``4x3:aabbcc,...``.

    Enough for a client to paint a blurred preview without ever seeing the
    photo itself.
    """
    try:
        image = Image.open(io.BytesIO(data))
        image = image.convert("RGB").resize(PLACEHOLDER_GRID)
    except (UnidentifiedImageError, OSError):
        return None

    width, height = PLACEHOLDER_GRID
    pixels = [image.getpixel((x, y)) for y in range(height) for x in range(width)]
    colours = ",".join(f"{r:02x}{g:02x}{b:02x}" for r, g, b in pixels)
    return f"{width}x{height}:{colours}"


def _normalise_image(data: bytes, content_type: str) -> bytes:
    image = Image.open(io.BytesIO(data)).convert("RGB")
    image.thumbnail((1400, 1400))

    buffer = io.BytesIO()
    image.save(buffer, format="PNG" if content_type == "image/png" else "JPEG", quality=85)
    return buffer.getvalue()


def store_upload(file_storage, purpose: str, uploaded_by=None, allowed_types=PHOTO_TYPES) -> dict:
    """Persist an uploaded file in GridFS and describe it.

    Returns ``{url, public_id, placeholder, content_type, uploaded_at}``.
    """
    mime_type = file_storage.mimetype
    if mime_type not in allowed_types:
        raise ValidationFailed(f"Invalid file type {mime_type}. Allowed: {', '.join(allowed_types)}")

    data = file_storage.read()
    if not data:
        raise ValidationFailed("Uploaded file is empty")
    if len(data) > MAX_UPLOAD_BYTES:
        raise ValidationFailed("Uploaded file exceeds the 5MB limit")

    placeholder = None
    if mime_type in PHOTO_TYPES:
        try:
            data = _normalise_image(data, mime_type)
        except (UnidentifiedImageError, OSError):
            raise ValidationFailed("Uploaded image could not be read")
        placeholder = compute_placeholder(data)

    base = os.path.splitext(os.path.basename(file_storage.filename or "upload"))[0] or "upload"
    ext = {"image/png": "png", "application/pdf": "pdf"}.get(mime_type, "jpg")
    filename = f"{base}_{uuid.uuid4().hex[:8]}.{ext}"

    stored = StoredFile(filename=filename, content_type=mime_type, purpose=purpose, uploaded_by=uploaded_by)
    stored.file.put(io.BytesIO(data), content_type=mime_type)
    stored.save()

    logger.info(f"✅ Stored {purpose} upload: {filename}")
    return {
        "url": f"/uploads/{filename}",
        "public_id": filename,
        "placeholder": placeholder,
        "content_type": mime_type,
        "uploaded_at": utcnow(),
    }


def delete_upload(public_id: str):
    """Remove a stored file; missing files are ignored."""
    stored = StoredFile.objects(filename=public_id).first()
    if not stored:
        return
    stored.file.delete()
    stored.delete()
