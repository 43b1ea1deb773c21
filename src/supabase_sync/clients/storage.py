"""
Storage API Client
==================

Thin blocking client for the platform's object-storage REST API, built on a
``requests.Session``. The storage sync drives it from executor threads.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..errors import ErrorCategory, SyncError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60
LIST_PAGE_SIZE = 1000


@dataclass
class BucketDescriptor:
    name: str
    public: bool = False
    file_size_limit: Optional[int] = None
    allowed_mime_types: Optional[List[str]] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "BucketDescriptor":
        return cls(
            name=data.get("name") or data["id"],
            public=bool(data.get("public", False)),
            file_size_limit=data.get("file_size_limit"),
            allowed_mime_types=data.get("allowed_mime_types"),
        )


@dataclass
class ObjectDescriptor:
    path: str
    size: int = 0
    content_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class StorageClient:
    """Blocking client for one instance's storage API."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = api_url.rstrip("/") + "/storage/v1"
        self.timeout = timeout
        self.session = session or requests.Session()
        self._setup_session(api_key)

    def _setup_session(self, api_key: str) -> None:
        headers = {"apikey": api_key, "Accept": "application/json"}
        # Opaque sb_secret_ keys are only accepted in the apikey header
        if api_key.count(".") == 2:
            headers["Authorization"] = f"Bearer {api_key}"
        self.session.headers.update(headers)

        retry = Retry(
            total=3,
            backoff_factor=1,
            status_forcelist=(429, 502, 503, 504),
            allowed_methods=frozenset({"GET", "POST"}),
        )
        adapter = HTTPAdapter(max_retries=retry)
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)

    def _request(self, method: str, endpoint: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.Timeout as e:
            raise SyncError(f"Storage API timed out: {method} {endpoint}",
                            ErrorCategory.TIMEOUT, original=e) from e
        except requests.RequestException as e:
            raise SyncError(f"Storage API unreachable: {e}",
                            ErrorCategory.CONNECTION, original=e) from e

        if response.status_code in (401, 403):
            raise SyncError(
                f"Storage API rejected credentials ({response.status_code}) for {endpoint}",
                ErrorCategory.AUTHENTICATION,
            )
        return response

    @staticmethod
    def _error_text(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            return str(body.get("message") or body.get("error") or body)
        return str(body)

    def _check(self, response: requests.Response, action: str) -> None:
        if not response.ok:
            raise SyncError(
                f"{action} failed ({response.status_code}): {self._error_text(response)}",
                ErrorCategory.STORAGE,
            )

    def ping(self) -> bool:
        """Verify the API answers and accepts our key."""
        self._check(self._request("GET", "bucket"), "List buckets")
        return True

    def list_buckets(self) -> List[BucketDescriptor]:
        response = self._request("GET", "bucket")
        self._check(response, "List buckets")
        return [BucketDescriptor.from_api(item) for item in response.json()]

    def create_bucket(self, bucket: BucketDescriptor) -> bool:
        """Create a bucket; returns False if it already existed."""
        payload = {
            "id": bucket.name,
            "name": bucket.name,
            "public": bucket.public,
            "file_size_limit": bucket.file_size_limit,
            "allowed_mime_types": bucket.allowed_mime_types,
        }
        response = self._request("POST", "bucket", json=payload)
        if response.ok:
            return True
        text = self._error_text(response)
        if response.status_code == 409 or "already exists" in text.lower() \
                or "duplicate" in text.lower():
            return False
        raise SyncError(f"Create bucket {bucket.name} failed ({response.status_code}): {text}",
                        ErrorCategory.STORAGE)

    def list_entries(self, bucket: str, prefix: str = "", limit: int = LIST_PAGE_SIZE,
                     offset: int = 0) -> List[Dict[str, Any]]:
        """One page of entries directly under ``prefix``; folders have no id."""
        payload = {
            "prefix": prefix,
            "limit": limit,
            "offset": offset,
            "sortBy": {"column": "name", "order": "asc"},
        }
        response = self._request("POST", f"object/list/{quote(bucket, safe='')}", json=payload)
        self._check(response, f"List {bucket}/{prefix}")
        return response.json()

    def download(self, bucket: str, path: str) -> Tuple[bytes, Optional[str]]:
        response = self._request(
            "GET", f"object/{quote(bucket, safe='')}/{quote(path, safe='/')}"
        )
        self._check(response, f"Download {bucket}/{path}")
        return response.content, response.headers.get("Content-Type")

    def upload(self, bucket: str, path: str, data: bytes,
               content_type: Optional[str] = None, upsert: bool = True) -> None:
        headers = {
            "Content-Type": content_type or "application/octet-stream",
            "x-upsert": "true" if upsert else "false",
        }
        response = self._request(
            "POST", f"object/{quote(bucket, safe='')}/{quote(path, safe='/')}",
            data=data, headers=headers,
        )
        self._check(response, f"Upload {bucket}/{path}")

    def close(self) -> None:
        self.session.close()
