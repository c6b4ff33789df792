"""
Product image pipeline.

Uploaded bytes and data URIs are decoded with Pillow, re-encoded as a bounded
WebP main image plus a square WebP thumbnail, and written under a random
uuid stem. URLs that already live under the managed prefix are re-attached
without touching the files. Superseded files are reclaimed by
``ImageStore.reconcile_images``.

Inputs are resolved once at the API boundary into one of three tagged
variants (``RawFile``, ``ExistingUrl``, ``DataUri``).
"""
import base64
import binascii
import contextlib
import io
import logging
import os
import posixpath
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Sequence, Union

from fastapi import UploadFile
from PIL import Image, ImageOps
from pydantic import BaseModel, Field

from schemas import ImageAsset

logger = logging.getLogger(__name__)

MAIN_MAX_DIMENSION = 800
MAIN_QUALITY = 85
THUMBNAIL_SIZE = 200
THUMBNAIL_QUALITY = 80
THUMBNAIL_PREFIX = "thumb_"
DATA_URI_PREFIX = "data:image"


class StorageError(Exception):
    """An image could not be decoded, written or removed."""


class RawFile(BaseModel):
    kind: Literal["raw_file"] = "raw_file"
    filename: str = ""
    content_type: str = ""
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


class ExistingUrl(BaseModel):
    kind: Literal["existing_url"] = "existing_url"
    url: str


class DataUri(BaseModel):
    kind: Literal["data_uri"] = "data_uri"
    uri: str

    def _payload(self) -> str:
        # Accept both "data:image/png;base64,...." and a bare base64 payload
        header, sep, payload = self.uri.partition(",")
        return payload if sep else header

    @property
    def size(self) -> int:
        """Decoded byte count, computed without decoding."""
        payload = self._payload().strip()
        return len(payload) * 3 // 4 - payload[-2:].count("=")

    def decode(self) -> bytes:
        try:
            return base64.b64decode(self._payload(), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise StorageError("Invalid base64 image data") from exc


ImageInput = Annotated[Union[RawFile, ExistingUrl, DataUri], Field(discriminator="kind")]


def resolve_upload(upload: UploadFile, max_size: int) -> RawFile:
    # Read one byte past the limit so oversized files are detectable without buffering all of them
    data = upload.file.read(max_size + 1)
    return RawFile(filename=upload.filename or "", content_type=upload.content_type or "", data=data)


def resolve_image_value(value: Any) -> Optional[Union[ExistingUrl, DataUri]]:
    """Turn a string or ``{url|base64|preview}`` object into a tagged input."""
    if isinstance(value, dict):
        value = value.get("url") or value.get("base64") or value.get("preview") or ""
    if not isinstance(value, str) or not value:
        return None
    if value.startswith(DATA_URI_PREFIX):
        return DataUri(uri=value)
    return ExistingUrl(url=value)


def _url_of(asset: Union[ImageAsset, Dict[str, Any]]) -> Optional[str]:
    if isinstance(asset, ImageAsset):
        return asset.url
    return asset.get("url")


def _mark_first_primary(assets: List[ImageAsset]) -> List[ImageAsset]:
    return [asset.model_copy(update={"is_primary": i == 0}) for i, asset in enumerate(assets)]


def _flatten_mode(image: Image.Image) -> Image.Image:
    if image.mode in ("RGB", "RGBA"):
        return image
    if image.mode in ("LA", "PA") or "transparency" in image.info:
        return image.convert("RGBA")
    return image.convert("RGB")


def _encode_webp(image: Image.Image, quality: int) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="WEBP", quality=quality)
    return buffer.getvalue()


def render_image(data: bytes):
    """Return ``(main_bytes, thumbnail_bytes)`` for raw image bytes."""
    try:
        with Image.open(io.BytesIO(data)) as source:
            image = _flatten_mode(ImageOps.exif_transpose(source))
            main = image.copy()
            # thumbnail() only ever shrinks, so small images are not upscaled
            main.thumbnail((MAIN_MAX_DIMENSION, MAIN_MAX_DIMENSION), Image.Resampling.LANCZOS)
            thumb = ImageOps.fit(image, (THUMBNAIL_SIZE, THUMBNAIL_SIZE), Image.Resampling.LANCZOS)
            return _encode_webp(main, MAIN_QUALITY), _encode_webp(thumb, THUMBNAIL_QUALITY)
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise StorageError(f"Could not process image: {exc}") from exc


class ImageStore:
    def __init__(self, upload_dir: str, subdir: str = "products", max_workers: int = 4):
        self.upload_dir = upload_dir
        self.directory = os.path.join(upload_dir, subdir)
        self.url_prefix = f"/uploads/{subdir}/"
        self.max_workers = max_workers

    def ensure_directory(self) -> None:
        os.makedirs(self.directory, exist_ok=True)

    def managed_filename(self, url: Optional[str]) -> Optional[str]:
        """File name behind a managed main-image URL, or None for anything else."""
        if not url or not url.startswith(self.url_prefix):
            return None
        name = url[len(self.url_prefix):]
        if not name or name in (".", "..") or name != posixpath.basename(name) or "\\" in name:
            return None
        if name.startswith(THUMBNAIL_PREFIX):
            return None
        return name

    def path_for(self, url: Optional[str]) -> Optional[str]:
        name = self.managed_filename(url)
        return os.path.join(self.directory, name) if name else None

    def thumbnail_url(self, url: Optional[str]) -> Optional[str]:
        name = self.managed_filename(url)
        return f"{self.url_prefix}{THUMBNAIL_PREFIX}{name}" if name else None

    # Ingestion

    def save(self, data: bytes) -> ImageAsset:
        main_bytes, thumb_bytes = render_image(data)
        filename = f"{uuid.uuid4()}.webp"
        main_path = os.path.join(self.directory, filename)
        thumb_path = os.path.join(self.directory, THUMBNAIL_PREFIX + filename)
        try:
            with open(main_path, "wb") as fh:
                fh.write(main_bytes)
            with open(thumb_path, "wb") as fh:
                fh.write(thumb_bytes)
        except OSError as exc:
            for path in (main_path, thumb_path):
                with contextlib.suppress(OSError):
                    os.remove(path)
            raise StorageError(f"Could not write {filename}: {exc}") from exc
        return ImageAsset(
            url=self.url_prefix + filename,
            thumbnail=self.url_prefix + THUMBNAIL_PREFIX + filename,
            size=len(main_bytes),
        )

    def _try_save(self, item: Union[RawFile, DataUri]) -> Optional[ImageAsset]:
        try:
            data = item.decode() if isinstance(item, DataUri) else item.data
            return self.save(data)
        except StorageError as exc:
            label = item.filename if isinstance(item, RawFile) and item.filename else item.kind
            logger.warning("Dropping image %s: %s", label, exc)
            return None

    def _save_all(self, files: Sequence[Union[RawFile, DataUri]]) -> List[Optional[ImageAsset]]:
        if not files:
            return []
        self.ensure_directory()
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(files))) as pool:
            # map() keeps input order, which decides the primary image
            return list(pool.map(self._try_save, files))

    def _existing_asset(self, url: str, known: Optional[Dict[str, ImageAsset]]) -> Optional[ImageAsset]:
        thumbnail = self.thumbnail_url(url)
        if thumbnail is None:
            logger.info("Ignoring unmanaged image url %s", url)
            return None
        if known is None:
            return ImageAsset(url=url, thumbnail=thumbnail)
        # With a known set, only images already attached may be re-attached
        previous = known.get(url)
        if previous is None:
            logger.warning("Ignoring image url %s not attached to this product", url)
            return None
        return previous.model_copy(update={"is_primary": False})

    def ingest_uploaded_files(self, files: Sequence[Union[RawFile, DataUri]]) -> List[ImageAsset]:
        saved = self._save_all(list(files))
        assets = [asset for asset in saved if asset is not None]
        if saved:
            logger.info("Stored %d of %d uploaded images", len(assets), len(saved))
        return _mark_first_primary(assets)

    def ingest_existing_urls(self, urls: Iterable[str], known: Optional[Dict[str, ImageAsset]] = None) -> List[ImageAsset]:
        """Re-attach managed URLs. When ``known`` is given, URLs outside it are dropped."""
        assets = [self._existing_asset(url, known) for url in urls]
        return _mark_first_primary([asset for asset in assets if asset is not None])

    def ingest(self, inputs: Sequence[ImageInput], known: Optional[Dict[str, ImageAsset]] = None) -> List[ImageAsset]:
        """Materialize mixed inputs in order; the first accepted one is primary."""
        inputs = list(inputs)
        results: List[Optional[ImageAsset]] = [None] * len(inputs)
        pending = []
        for i, item in enumerate(inputs):
            if isinstance(item, ExistingUrl):
                results[i] = self._existing_asset(item.url, known)
            else:
                pending.append(i)
        for i, asset in zip(pending, self._save_all([inputs[i] for i in pending])):
            results[i] = asset
        return _mark_first_primary([asset for asset in results if asset is not None])

    # Removal

    def delete(self, url: str) -> bool:
        """Remove a managed image and its thumbnail. Missing files are not an error."""
        name = self.managed_filename(url)
        if name is None:
            return False
        removed = True
        try:
            os.remove(os.path.join(self.directory, name))
        except FileNotFoundError:
            removed = False
        except OSError as exc:
            raise StorageError(f"Could not delete {name}: {exc}") from exc
        try:
            os.remove(os.path.join(self.directory, THUMBNAIL_PREFIX + name))
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not delete thumbnail of %s: %s", name, exc)
        return removed

    def stale_urls(self, old_assets: Iterable, new_assets: Iterable) -> List[str]:
        new_urls = {_url_of(asset) for asset in new_assets}
        stale = []
        for asset in old_assets or []:
            url = _url_of(asset)
            if url and url not in new_urls:
                stale.append(url)
        return stale

    def reconcile_images(self, old_assets: Iterable, new_assets: Iterable) -> List[str]:
        """Delete files of old assets absent from the new list. Returns the URLs that failed."""
        failed = []
        for url in self.stale_urls(old_assets, new_assets):
            try:
                self.delete(url)
            except StorageError as exc:
                logger.warning("Image cleanup failed for %s: %s", url, exc)
                failed.append(url)
        return failed
