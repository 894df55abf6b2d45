import io
import json
from PIL import Image, ImageOps, UnidentifiedImageError
from audit.errors import InvalidImage
from audit.logger import log_event
from audit.models import EvidenceAnnotation, StoredEvidence

class EvidenceStore:
    """Photo persistence for audit items, on top of the backing API."""

    def __init__(self, api, *, max_side=1920, jpeg_quality=85):
        self.api = api
        self.max_side = max_side
        self.jpeg_quality = jpeg_quality

    def prepare(self, image: bytes) -> bytes:
        """Apply EXIF orientation, fit within max_side and re-encode as JPEG."""
        try:
            with Image.open(io.BytesIO(image)) as original:
                img = ImageOps.exif_transpose(original)
                img.thumbnail((self.max_side, self.max_side))
                if img.mode != "RGB":
                    img = img.convert("RGB")

                buffer = io.BytesIO()
                img.save(buffer, format="JPEG", quality=self.jpeg_quality)

        except (UnidentifiedImageError, OSError) as e:
            raise InvalidImage(f"unreadable image: {e}") from e

        prepared = buffer.getvalue()
        log_event("TRACE", "image_prepared", node="evidence_store",
                  meta={"original_bytes": len(image), "prepared_bytes": len(prepared),
                        "size": list(img.size)})
        return prepared

    async def upload(self, session_id, item_id, image: bytes) -> StoredEvidence:
        return await self.api.add_photo(session_id, item_id, image, "image/jpeg")

    async def delete(self, session_id, item_id, photo_id):
        await self.api.remove_photo(session_id, item_id, photo_id)

    async def save_annotation(self, session_id, item_id, photo_id, annotation: EvidenceAnnotation):
        analysis = json.dumps(annotation.model_dump(by_alias=True), ensure_ascii=False)
        await self.api.update_photo_analysis(session_id, item_id, photo_id, analysis)
