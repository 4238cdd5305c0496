"""Chunked file upload over HTTP using requests.

The destination URL answers a GET with the upload endpoints; the file is
then sent as a multipart upload: initiate, one presigned PUT per part,
complete. Callers only see an UploadResult; this module never raises.
"""

from __future__ import annotations

import hashlib
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import requests

from .constants import UPLOAD_PART_SIZE, UPLOAD_TIMEOUT

log = logging.getLogger(__name__)


class UploadError(Exception):
    """Raised inside the protocol when the server rejects a step."""


@dataclass(frozen=True, slots=True)
class UploadResult:
    success: bool
    error: str | None = None
    skipped: bool = False  # no destination configured

    @classmethod
    def ok(cls) -> UploadResult:
        return cls(success=True)

    @classmethod
    def disabled(cls) -> UploadResult:
        return cls(success=True, skipped=True)

    @classmethod
    def failed(cls, error: str) -> UploadResult:
        return cls(success=False, error=error)


def _check(response: requests.Response, step: str) -> None:
    if not response.ok:
        raise UploadError(
            f"Failed to {step}: {response.status_code} {response.reason}\n{response.text}"
        )


def _json(response: requests.Response, step: str) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError as exc:
        raise UploadError(f"Invalid JSON from {step}: {exc}") from exc
    if not isinstance(data, dict):
        raise UploadError(f"Unexpected response from {step}: {data!r}")
    return data


class UploadDispatcher:
    """Performs one delivery attempt per call."""

    def __init__(
        self,
        session: requests.Session | None = None,
        part_size: int = UPLOAD_PART_SIZE,
        timeout: float = UPLOAD_TIMEOUT,
    ) -> None:
        self._session = session
        self.part_size = part_size
        self.timeout = timeout

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def attempt(
        self,
        file_name: str,
        content_type: str,
        data: bytes | str | Path,
        destination: str,
    ) -> UploadResult:
        """Upload *data* (bytes, or a path to read) to *destination*.

        An empty destination means uploads are disabled and counts as
        success without touching the network.
        """
        if not destination:
            log.info("No uploader endpoint configured, skipping upload of %s", file_name)
            return UploadResult.disabled()
        try:
            payload = data if isinstance(data, bytes) else Path(data).read_bytes()
            self._upload(file_name, content_type, payload, destination)
        except (requests.RequestException, OSError, UploadError, KeyError, TypeError) as exc:
            log.warning("Upload of %s failed: %s", file_name, exc)
            return UploadResult.failed(str(exc) or exc.__class__.__name__)
        log.info("Uploaded %s (%d bytes)", file_name, len(payload))
        return UploadResult.ok()

    def _upload(self, file_name: str, content_type: str, payload: bytes, destination: str) -> None:
        session = self.session
        timeout = self.timeout

        info_resp = session.get(destination, timeout=timeout)
        _check(info_resp, "get upload info")
        endpoints = _json(info_resp, "upload info")["endpoints"]

        file_size = len(payload)
        part_count = max(1, math.ceil(file_size / self.part_size))
        file_hash = hashlib.sha1(payload).hexdigest()

        init_resp = session.post(
            endpoints["initiate_upload"],
            json={
                "file_name": file_name,
                "content_type": content_type,
                "part_count": part_count,
            },
            timeout=timeout,
        )
        _check(init_resp, "initiate upload")
        initiate = _json(init_resp, "initiate upload")

        try:
            self._send_parts(session, endpoints, initiate, content_type, payload, part_count, file_hash)
        except (requests.RequestException, UploadError, KeyError, TypeError):
            self._abort(session, endpoints, initiate)
            raise

    def _send_parts(
        self,
        session: requests.Session,
        endpoints: dict[str, Any],
        initiate: dict[str, Any],
        content_type: str,
        payload: bytes,
        part_count: int,
        file_hash: str,
    ) -> None:
        timeout = self.timeout
        parts: list[dict[str, Any]] = []
        for part_number in range(1, part_count + 1):
            start = (part_number - 1) * self.part_size
            chunk = payload[start:start + self.part_size]

            url_resp = session.post(
                endpoints["part_url"],
                json={
                    "upload_id": initiate["upload_id"],
                    "file_path": initiate["file_path"],
                    "part_number": part_number,
                    "content_type": content_type,
                },
                timeout=timeout,
            )
            _check(url_resp, "get part URL")
            upload_url = _json(url_resp, "part URL")["upload_url"]

            put_resp = session.put(
                upload_url, data=chunk, headers={"Content-Type": content_type}, timeout=timeout,
            )
            _check(put_resp, f"upload part {part_number}")
            etag = put_resp.headers.get("ETag")
            if not etag:
                raise UploadError(f"No ETag returned for part {part_number}")
            parts.append({"ETag": etag.replace('"', ""), "PartNumber": part_number})

        complete_resp = session.post(
            endpoints["complete_upload"],
            json={
                "upload_id": initiate["upload_id"],
                "file_path": initiate["file_path"],
                "upload_record_id": initiate["upload_record_id"],
                "parts": parts,
                "file_size": len(payload),
                "file_hash": file_hash,
            },
            timeout=timeout,
        )
        _check(complete_resp, "complete upload")

    def _abort(self, session: requests.Session, endpoints: dict[str, Any], initiate: dict[str, Any]) -> None:
        """Best-effort cleanup of a half-finished multipart upload."""
        abort_url = endpoints.get("abort_upload")
        if not abort_url:
            return
        try:
            session.post(
                abort_url,
                json={"upload_id": initiate.get("upload_id"), "file_path": initiate.get("file_path")},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            log.debug("Abort of upload %s failed: %s", initiate.get("upload_id"), exc)
