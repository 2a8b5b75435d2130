"""Product image storage on Cloudinary."""
import logging
from pathlib import PurePath
from typing import BinaryIO

import cloudinary
import cloudinary.exceptions
import cloudinary.uploader

import config
from errors import AssetHostError, InvalidRequestError

logger = logging.getLogger(__name__)

ALLOWED_FORMATS = ["jpg", "png", "jpeg", "webp"]

if config.CLOUDINARY_CLOUD_NAME:
    cloudinary.config(
        cloud_name=config.CLOUDINARY_CLOUD_NAME,
        api_key=config.CLOUDINARY_API_KEY,
        api_secret=config.CLOUDINARY_API_SECRET,
        secure=True,
    )


def check_image_filename(filename: str) -> None:
    extension = PurePath(filename or "").suffix.lower().lstrip(".")
    if extension not in ALLOWED_FORMATS:
        raise InvalidRequestError(
            f"Unsupported image type '{extension or filename}'. "
            f"Allowed: {', '.join(ALLOWED_FORMATS)}"
        )


class AssetHost:
    """Uploads and deletes images in one Cloudinary folder."""

    def __init__(self, folder: str = config.CLOUDINARY_FOLDER):
        self.folder = folder

    def upload(self, fileobj: BinaryIO, filename: str) -> tuple[str, str]:
        """Store an image; returns its URL and asset id."""
        if not config.CLOUDINARY_CLOUD_NAME:
            raise AssetHostError("upload", "image host not configured")
        try:
            result = cloudinary.uploader.upload(
                fileobj,
                folder=self.folder,
                allowed_formats=ALLOWED_FORMATS,
                resource_type="image",
            )
        except cloudinary.exceptions.Error as e:
            logger.exception("Upload of %s failed", filename)
            raise AssetHostError("upload", str(e)) from e
        logger.info("Uploaded %s as %s", filename, result["public_id"])
        return result["secure_url"], result["public_id"]

    def destroy(self, public_id: str) -> None:
        if not config.CLOUDINARY_CLOUD_NAME:
            raise AssetHostError("delete", "image host not configured")
        try:
            result = cloudinary.uploader.destroy(public_id, invalidate=True)
        except cloudinary.exceptions.Error as e:
            logger.exception("Deletion of %s failed", public_id)
            raise AssetHostError("delete", str(e)) from e
        # "not found" means the asset is already gone
        if result.get("result") not in ("ok", "not found"):
            raise AssetHostError("delete", str(result))
        logger.info("Deleted asset %s", public_id)


def get_asset_host() -> AssetHost:
    return AssetHost()
