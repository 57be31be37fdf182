import logging
import os
from typing import Iterable, List, Optional
from urllib.parse import urljoin
from uuid import uuid4

from werkzeug.utils import secure_filename

from .errors import InternalError, ValidationError

logger = logging.getLogger(__name__)


class ImageStorage:
    """Stores uploaded images on local disk under random names."""

    def __init__(self, folder: str, allowed_extensions: Iterable[str]):
        self.folder = folder
        self.allowed_extensions = {ext.lower() for ext in allowed_extensions}
        os.makedirs(self.folder, exist_ok=True)

    def allowed_image_extension(self, filename: str) -> bool:
        extension = os.path.splitext(filename)[1].lower().lstrip(".")
        if not extension:
            return False
        return extension in self.allowed_extensions

    def save(self, image_file) -> str:
        if not image_file or not getattr(image_file, "filename", ""):
            raise ValidationError("An image file is required.")

        original_filename = secure_filename(image_file.filename)
        if not original_filename:
            raise ValidationError("Please choose a valid file name.")

        if not self.allowed_image_extension(original_filename):
            allowed = ", ".join(sorted(ext.upper() for ext in self.allowed_extensions))
            raise ValidationError(f"Unsupported image format. Upload {allowed} files.")

        extension = os.path.splitext(original_filename)[1].lower()
        unique_filename = f"{uuid4().hex}{extension}"
        destination = os.path.join(self.folder, unique_filename)

        try:
            image_file.save(destination)
        except OSError as exc:
            logger.error("Could not store upload %s: %s", unique_filename, exc)
            raise InternalError("We could not store the uploaded image. Please try again.")

        return unique_filename

    def save_many(self, image_files) -> List[str]:
        saved_filenames: List[str] = []
        for image_file in image_files or []:
            if not image_file or not getattr(image_file, "filename", ""):
                continue
            try:
                saved_filenames.append(self.save(image_file))
            except Exception:
                self.remove(saved_filenames)
                raise
        return saved_filenames

    def remove(self, filename) -> None:
        if not filename:
            return

        if isinstance(filename, (list, tuple, set)):
            for item in filename:
                self.remove(item)
            return

        target = os.path.join(self.folder, os.path.basename(str(filename)))
        try:
            os.remove(target)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("Could not remove upload %s: %s", target, exc)


def build_upload_url(host_url: str, filename: Optional[str]) -> str:
    if not filename:
        return ""

    sanitized = str(filename).strip()
    if not sanitized:
        return ""

    return urljoin(host_url, f"uploads/{sanitized}")
