import asyncio
import hashlib

import httpx
import pytest

import api_client
import config
from errors import UpstreamError

UPLOAD_OK = {
    "secure_url": "https://res.cloudinary.com/demo/image/upload/v1712/cars/abc.jpg",
    "public_id": "cars/abc",
}


@pytest.fixture(autouse=True)
def cloudinary_settings(monkeypatch):
    monkeypatch.setattr(config, "CLOUDINARY_CLOUD_NAME", "demo")
    monkeypatch.setattr(config, "CLOUDINARY_API_KEY", "key123")
    monkeypatch.setattr(config, "CLOUDINARY_API_SECRET", "secret")


def run_with_responses(responses, call):
    """Serve `responses` in order (httpx.Response or exception) and run `call(client)`."""
    requests = []
    queue = list(responses)

    def handler(request):
        requests.append(request)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await call(client)

    return asyncio.run(main()), requests


def upload(client, **kwargs):
    return api_client.upload_image(b"bytes", "car.jpg", "cars", client=client, backoff=0, **kwargs)


def test_sign_params_sorts_and_skips_empty_values():
    expected = hashlib.sha1(b"folder=cars&timestamp=1700000000secret").hexdigest()
    assert api_client.sign_params({"timestamp": "1700000000", "folder": "cars", "eager": ""}, "secret") == expected


def test_upload_success():
    result, requests = run_with_responses([httpx.Response(200, json=UPLOAD_OK)], upload)

    assert result == {"url": UPLOAD_OK["secure_url"], "public_id": "cars/abc"}
    assert len(requests) == 1
    assert str(requests[0].url) == "https://api.cloudinary.com/v1_1/demo/image/upload"
    body = requests[0].content
    assert b'name="api_key"' in body and b"key123" in body
    assert b'name="signature"' in body
    assert b'filename="car.jpg"' in body


def test_upload_retries_server_errors():
    responses = [httpx.Response(503, json={"error": {"message": "busy"}}), httpx.Response(200, json=UPLOAD_OK)]

    result, requests = run_with_responses(responses, upload)

    assert result["url"] == UPLOAD_OK["secure_url"]
    assert len(requests) == 2


def test_upload_retries_transport_errors():
    responses = [httpx.ConnectError("refused"), httpx.ReadTimeout("slow"), httpx.Response(200, json=UPLOAD_OK)]

    result, requests = run_with_responses(responses, upload)

    assert result["public_id"] == "cars/abc"
    assert len(requests) == 3


def test_upload_does_not_retry_client_errors():
    responses = [httpx.Response(400, json={"error": {"message": "Invalid image file"}})]

    with pytest.raises(UpstreamError) as exc:
        run_with_responses(responses, upload)

    assert exc.value.message == "Image upload failed: Invalid image file"


def test_upload_gives_up_after_retries():
    responses = [httpx.Response(502, text="bad gateway") for _ in range(3)]

    with pytest.raises(UpstreamError) as exc:
        run_with_responses(responses, lambda client: upload(client, retries=2))

    assert exc.value.message.startswith("Image upload failed")
    assert exc.value.status_code == 500


def test_upload_without_url_is_an_error():
    with pytest.raises(UpstreamError) as exc:
        run_with_responses([httpx.Response(200, json={"public_id": "cars/abc"})], upload)
    assert exc.value.message == "Image upload failed: no URL returned"


def test_upload_requires_configuration(monkeypatch):
    monkeypatch.setattr(config, "CLOUDINARY_API_SECRET", "")

    with pytest.raises(UpstreamError) as exc:
        asyncio.run(api_client.upload_image(b"bytes", "car.jpg", "cars"))
    assert exc.value.message == "Image storage is not configured"


@pytest.mark.parametrize("url, expected", [
    ("https://res.cloudinary.com/demo/image/upload/v1712/cars/abc.jpg", "cars/abc"),
    ("https://res.cloudinary.com/demo/image/upload/car_categories/suv.png?x=1", "car_categories/suv"),
    ("https://example.com/images/abc.jpg", None),
    ("", None),
    (None, None),
])
def test_public_id_from_url(url, expected):
    assert api_client.public_id_from_url(url) == expected


def test_destroy_image():
    removed, requests = run_with_responses(
        [httpx.Response(200, json={"result": "ok"})],
        lambda client: api_client.destroy_image("cars/abc", client=client),
    )
    assert removed is True
    assert str(requests[0].url).endswith("/demo/image/destroy")
    assert b"public_id=cars%2Fabc" in requests[0].content

    missing, _ = run_with_responses(
        [httpx.Response(200, json={"result": "not found"})],
        lambda client: api_client.destroy_image("cars/abc", client=client),
    )
    assert missing is True


def test_destroy_image_failure():
    with pytest.raises(UpstreamError):
        run_with_responses(
            [httpx.Response(500, text="boom")],
            lambda client: api_client.destroy_image("cars/abc", client=client),
        )
