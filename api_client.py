"""
Image storage client (Cloudinary upload API).
"""
import asyncio
import hashlib
import logging
import re
import time
from typing import Optional

import httpx

import config
from errors import UpstreamError

logger = logging.getLogger(__name__)

_VERSION_SEGMENT = re.compile(r"^v\d+/")


def sign_params(params: dict, api_secret: str) -> str:
    """
    Sign request parameters the way the upload API expects:
    sha1 of the alphabetically sorted `key=value` pairs joined with '&',
    followed by the API secret.
    """
    to_sign = "&".join(f"{key}={params[key]}" for key in sorted(params) if params[key] not in (None, ""))
    return hashlib.sha1(f"{to_sign}{api_secret}".encode("utf-8")).hexdigest()


def _endpoint(action: str) -> str:
    return f"{config.CLOUDINARY_BASE_URL}/{config.CLOUDINARY_CLOUD_NAME}/image/{action}"


def _ensure_configured():
    if not (config.CLOUDINARY_CLOUD_NAME and config.CLOUDINARY_API_KEY and config.CLOUDINARY_API_SECRET):
        raise UpstreamError("Image storage is not configured")


def _signed_fields(params: dict) -> dict:
    return {
        **params,
        "api_key": config.CLOUDINARY_API_KEY,
        "signature": sign_params(params, config.CLOUDINARY_API_SECRET),
    }


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
    return f"HTTP {response.status_code}"


def public_id_from_url(url: str) -> Optional[str]:
    """
    Recover the storage public id from a delivery URL, e.g.
    https://res.cloudinary.com/demo/image/upload/v1712/cars/abc.jpg -> cars/abc
    """
    if not url or "/upload/" not in url:
        return None
    path = url.split("/upload/", 1)[1].split("?", 1)[0]
    path = _VERSION_SEGMENT.sub("", path)
    if "." in path.rsplit("/", 1)[-1]:
        path = path.rsplit(".", 1)[0]
    return path or None


async def _post_with_retry(
    client: httpx.AsyncClient,
    url: str,
    fields: dict,
    files: dict,
    retries: int,
    backoff: float,
) -> dict:
    attempts = retries + 1
    last_error = "unknown error"

    for attempt in range(1, attempts + 1):
        try:
            response = await client.post(url, data=fields, files=files, timeout=config.UPLOAD_TIMEOUT)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            if e.response.status_code < 500:
                message = _error_message(e.response)
                logger.error(f"Image upload rejected: {e.response.status_code} - {message}")
                raise UpstreamError(f"Image upload failed: {message}")
            last_error = _error_message(e.response)
        except httpx.TransportError as e:
            last_error = str(e) or type(e).__name__

        if attempt < attempts:
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(f"Image upload attempt {attempt}/{attempts} failed ({last_error}); retrying in {delay:.1f}s")
            await asyncio.sleep(delay)

    logger.error(f"Image upload failed after {attempts} attempts: {last_error}")
    raise UpstreamError(f"Image upload failed: {last_error}")


async def upload_image(
    data: bytes,
    filename: str,
    folder: str,
    client: Optional[httpx.AsyncClient] = None,
    retries: Optional[int] = None,
    backoff: Optional[float] = None,
) -> dict:
    """
    Upload image bytes and return {"url": secure_url, "public_id": public_id}.

    Each attempt is bounded by UPLOAD_TIMEOUT. Transport errors and 5xx
    responses are retried with exponential backoff; 4xx responses and
    exhausted retries raise UpstreamError.

    Args:
        data: Raw image bytes
        filename: Original file name, passed through to the store
        folder: Destination folder in the store
        client: Optional HTTP client; a short-lived one is created when omitted
        retries: Retries after the first attempt (default UPLOAD_MAX_RETRIES)
        backoff: Base delay in seconds (default UPLOAD_BACKOFF_SECONDS)
    """
    _ensure_configured()
    retries = config.UPLOAD_MAX_RETRIES if retries is None else retries
    backoff = config.UPLOAD_BACKOFF_SECONDS if backoff is None else backoff

    fields = _signed_fields({"folder": folder, "timestamp": str(int(time.time()))})
    files = {"file": (filename or "upload", data)}

    logger.info(f"Uploading image '{filename}' ({len(data)} bytes) to folder '{folder}'...")
    if client is None:
        async with httpx.AsyncClient() as owned_client:
            payload = await _post_with_retry(owned_client, _endpoint("upload"), fields, files, retries, backoff)
    else:
        payload = await _post_with_retry(client, _endpoint("upload"), fields, files, retries, backoff)

    secure_url = payload.get("secure_url") if isinstance(payload, dict) else None
    if not secure_url:
        raise UpstreamError("Image upload failed: no URL returned")

    logger.info(f"Image uploaded: {secure_url}")
    return {"url": secure_url, "public_id": payload.get("public_id")}


async def destroy_image(public_id: str, client: Optional[httpx.AsyncClient] = None) -> bool:
    """
    Delete an image from the store.
    Returns True when the image is gone (deleted now or already missing).
    """
    _ensure_configured()
    fields = _signed_fields({"public_id": public_id, "timestamp": str(int(time.time()))})

    async def _destroy(http: httpx.AsyncClient) -> bool:
        try:
            response = await http.post(_endpoint("destroy"), data=fields, timeout=config.UPLOAD_TIMEOUT)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise UpstreamError(f"Image delete failed: {_error_message(e.response)}")
        except httpx.TransportError as e:
            raise UpstreamError(f"Image delete failed: {str(e) or type(e).__name__}")
        result = response.json().get("result")
        return result in ("ok", "not found")

    if client is None:
        async with httpx.AsyncClient() as owned_client:
            return await _destroy(owned_client)
    return await _destroy(client)
