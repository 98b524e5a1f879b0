import httpx
import pytest

from services.holodex.api.livestream import HolodexLivestreamAPI
from shared.errors import (
    DeserializeError,
    NetworkError,
    PermanentApiError,
    RateLimited,
)

pytestmark = pytest.mark.unit

BASE_URL = "https://holodex.test/api/v2"


def _video(video_id, channel_id, **overrides):
    payload = {
        "id": video_id,
        "title": f"stream {video_id}",
        "type": "stream",
        "status": "upcoming",
        "start_scheduled": "2024-05-01T12:00:00Z",
        "channel": {"id": channel_id},
    }
    payload.update(overrides)
    return payload


def _api(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HolodexLivestreamAPI(api_key="key", base_url=BASE_URL, client=client, **kwargs)


@pytest.mark.asyncio
async def test_fetch_live_windows_channel_list():
    seen = []

    def handler(request):
        channels = request.url.params["channels"].split(",")
        seen.append(channels)
        return httpx.Response(200, json=[_video(f"v-{c}", c) for c in channels])

    api = _api(handler, window_size=2)
    result = await api.fetch_live(["c", "a", "b", "a"])

    assert seen == [["a", "b"], ["c"]]
    assert sorted(e.id for e in result.entries) == ["v-a", "v-b", "v-c"]
    assert result.dropped == 0


@pytest.mark.asyncio
async def test_fetch_live_drops_bad_entries_and_foreign_channels():
    def handler(request):
        return httpx.Response(200, json=[
            _video("ok", "mine"),
            _video("collab", "someone-else"),
            _video("clip", "mine", type="clip"),
            {"id": "broken"},
        ])

    result = await _api(handler).fetch_live(["mine"])

    assert [e.id for e in result.entries] == ["ok"]
    assert result.dropped == 1


@pytest.mark.asyncio
async def test_fetch_live_rejects_non_list_body():
    api = _api(lambda request: httpx.Response(200, json={"error": "nope"}))
    with pytest.raises(DeserializeError):
        await api.fetch_live(["mine"])


@pytest.mark.asyncio
async def test_rate_limit_carries_retry_after():
    api = _api(lambda request: httpx.Response(429, headers={"Retry-After": "12"}))
    with pytest.raises(RateLimited) as info:
        await api.fetch_live(["mine"])
    assert info.value.retry_after == 12.0


@pytest.mark.asyncio
async def test_server_error_is_transient():
    api = _api(lambda request: httpx.Response(503))
    with pytest.raises(NetworkError):
        await api.fetch_live(["mine"])


@pytest.mark.asyncio
async def test_client_error_is_permanent():
    api = _api(lambda request: httpx.Response(403))
    with pytest.raises(PermanentApiError) as info:
        await api.fetch_live(["mine"])
    assert info.value.status_code == 403


@pytest.mark.asyncio
async def test_transport_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(NetworkError):
        await _api(handler).fetch_live(["mine"])


@pytest.mark.asyncio
async def test_fetch_video_resolves_entry():
    def handler(request):
        assert request.url.path == "/api/v2/videos/abc"
        return httpx.Response(200, json=_video("abc", "mine", status="past",
                                               start_actual="2024-05-01T12:00:00Z",
                                               end_actual="2024-05-01T13:00:00Z"))

    entry = await _api(handler).fetch_video("abc")
    assert entry.id == "abc"
    assert entry.actual_end is not None


@pytest.mark.asyncio
async def test_fetch_video_unknown_returns_none():
    api = _api(lambda request: httpx.Response(404))
    assert await api.fetch_video("gone") is None


def test_requires_api_key():
    with pytest.raises(RuntimeError):
        HolodexLivestreamAPI(api_key="")
