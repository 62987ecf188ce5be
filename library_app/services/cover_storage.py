"""Cover images kept in an S3/MinIO-compatible bucket.

Objects are named by convention, ``book-{id}.{ext}`` or ``isbn-{isbn}.{ext}``,
and reached with plain HTTP: HEAD to probe, GET to fetch, POST to upload.
The library treats the bucket as an opaque URL resolver.
"""
import logging
from typing import List, Optional, Tuple

import httpx

from library_app.config import Settings
from library_app.errors import ExternalServiceError, ValidationError
from library_app.services.http_client import OptimizedHTTPClient

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = ["jpg", "jpeg", "png", "webp"]


class CoverStorage:
    def __init__(
        self,
        endpoint: str = "localhost",
        port: str = "9000",
        bucket: str = "book-covers",
        use_ssl: bool = False,
        max_size: int = 5 * 1024 * 1024,
        extensions: Optional[List[str]] = None,
        http_client: Optional[OptimizedHTTPClient] = None,
    ) -> None:
        self.endpoint = endpoint
        self.port = str(port) if port else ""
        self.bucket = bucket
        self.use_ssl = use_ssl
        self.max_size = max_size
        self.extensions = extensions or list(DEFAULT_EXTENSIONS)
        self.http = http_client or OptimizedHTTPClient()

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.BaseTransport] = None) -> "CoverStorage":
        return cls(
            endpoint=settings.minio_endpoint,
            port=settings.minio_port,
            bucket=settings.minio_bucket,
            use_ssl=settings.minio_use_ssl,
            max_size=settings.max_cover_size,
            extensions=settings.cover_extensions,
            http_client=OptimizedHTTPClient(timeout=settings.cover_storage_timeout, transport=transport),
        )

    # ------------------------- URL convention ------------------------- #
    @property
    def base_url(self) -> str:
        protocol = "https" if self.use_ssl else "http"
        port = f":{self.port}" if self.port else ""
        return f"{protocol}://{self.endpoint}{port}/{self.bucket}"

    def cover_url(self, item_id: int, extension: str = "jpg") -> str:
        return f"{self.base_url}/book-{item_id}.{extension}"

    def cover_url_by_isbn(self, isbn: str, extension: str = "jpg") -> str:
        clean_isbn = isbn.replace("-", "").replace(" ", "")
        return f"{self.base_url}/isbn-{clean_isbn}.{extension}"

    # ------------------------- Lookups ------------------------- #
    def image_exists(self, url: str) -> bool:
        response = self.http.request_with_retry("HEAD", url, retries=1)
        return response is not None and response.is_success

    def find_available_cover(self, item_id: int, isbn: Optional[str] = None) -> Optional[str]:
        """First existing cover URL: by item id, then by ISBN, each across known extensions."""
        for ext in self.extensions:
            url = self.cover_url(item_id, ext)
            if self.image_exists(url):
                return url
        if isbn:
            for ext in self.extensions:
                url = self.cover_url_by_isbn(isbn, ext)
                if self.image_exists(url):
                    return url
        return None

    def fetch_cover(self, url: str) -> Optional[Tuple[bytes, str]]:
        """Download a cover; None when the object is missing or unreachable."""
        response = self.http.request_with_retry("GET", url)
        if response is None or response.status_code != 200:
            return None
        media_type = response.headers.get("content-type", "image/jpeg")
        return response.content, media_type

    # ------------------------- Upload ------------------------- #
    def upload_cover(
        self,
        content: bytes,
        filename: str,
        content_type: str,
        item_id: Optional[int] = None,
        isbn: Optional[str] = None,
    ) -> str:
        """Store a cover image and return its public URL.

        The object is named after the item id when given, else after the ISBN.
        """
        if item_id is None and not isbn:
            raise ValidationError("An item id or ISBN is required.")
        if not content_type or not content_type.startswith("image/"):
            raise ValidationError("The file must be an image.")
        if not content:
            raise ValidationError("The file is empty.")
        if len(content) > self.max_size:
            raise ValidationError(f"The file must not exceed {self.max_size // (1024 * 1024)} MB.")

        extension = filename.rsplit(".", 1)[-1].lower() if filename and "." in filename else "jpg"
        if extension not in self.extensions:
            raise ValidationError(f"Unsupported image extension: {extension}")

        url = self.cover_url(item_id, extension) if item_id is not None else self.cover_url_by_isbn(isbn, extension)
        try:
            response = self.http.post(
                url,
                content=content,
                headers={"Content-Type": content_type, "Cache-Control": "max-age=31536000"},
            )
        except httpx.RequestError as e:
            logger.error(f"Cover upload to {url} failed: {e}")
            raise ExternalServiceError("Cover storage unreachable.") from e
        if not response.is_success:
            logger.error(f"Cover upload to {url} rejected: {response.status_code} - {response.text}")
            raise ExternalServiceError(f"Cover storage rejected the upload ({response.status_code}).")
        logger.info(f"Cover uploaded: {url} ({len(content)} bytes)")
        return url

    def close(self) -> None:
        self.http.close()
