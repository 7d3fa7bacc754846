# 📂 backend/hostbill/image_host.py — profile image upload (Cloudinary REST API)
# -----------------------------------------------------------------------------
# Signed upload: the signature is sha1("k1=v1&k2=v2..." + api_secret) over the
# sorted upload parameters (file, api_key excluded). Images land in the
# `user-profiles` folder cropped to 400x400 around the face.
# -----------------------------------------------------------------------------

from __future__ import annotations

import hashlib
import time
from typing import Dict, Optional

import httpx

from .config import get_settings
from .utils import get_logger

settings = get_settings()
log = get_logger("images")

UPLOAD_FOLDER = "user-profiles"
TRANSFORMATION = "c_fill,g_face,h_400,w_400/q_auto"


class ImageHostError(Exception):
    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def sign_params(params: Dict[str, str], api_secret: str) -> str:
    to_sign = "&".join(f"{k}={params[k]}" for k in sorted(params))
    return hashlib.sha1(f"{to_sign}{api_secret}".encode("utf-8")).hexdigest()


async def upload_profile_image(
    user_id: str,
    content: bytes,
    content_type: str,
    filename: str = "avatar",
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """Uploads the image and returns its secure URL."""
    if not content:
        raise ImageHostError("Image file is empty", 400)
    if len(content) > settings.IMAGE_MAX_BYTES:
        raise ImageHostError("File size must be less than 10MB", 400)
    if not (content_type or "").startswith("image/"):
        raise ImageHostError("Only image uploads are allowed", 400)
    if not (settings.CLOUDINARY_CLOUD_NAME and settings.CLOUDINARY_API_KEY and settings.CLOUDINARY_API_SECRET):
        raise ImageHostError("Image hosting is not configured", 500)

    params = {
        "folder": UPLOAD_FOLDER,
        "public_id": f"user-{user_id}",
        "timestamp": str(int(time.time())),
        "transformation": TRANSFORMATION,
    }
    data = dict(params)
    data["api_key"] = settings.CLOUDINARY_API_KEY
    data["signature"] = sign_params(params, settings.CLOUDINARY_API_SECRET)

    url = f"https://api.cloudinary.com/v1_1/{settings.CLOUDINARY_CLOUD_NAME}/image/upload"
    try:
        async with httpx.AsyncClient(timeout=60.0, transport=transport) as client:
            r = await client.post(url, data=data, files={"file": (filename, content, content_type)})
            r.raise_for_status()
            body = r.json()
    except httpx.HTTPError as e:
        log.error("[Images] upload for user=%s failed: %s", user_id, e)
        raise ImageHostError(f"Failed to upload image: {e}")

    secure_url = body.get("secure_url")
    if not secure_url:
        raise ImageHostError("Image host returned no URL")
    log.info("[Images] uploaded profile image for user=%s", user_id)
    return secure_url
