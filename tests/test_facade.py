import asyncio

import httpx
import pytest

from ambuwatch.errors import BackendError, CredentialsInvalid, InvalidInput, ResolutionCancelled
from ambuwatch.identity import Confirmed, Pending
from ambuwatch.schemas import ArtifactKind, FileUpload
from ambuwatch.transport.events import SESSION_DATA_ADDED, SESSION_DATA_DELETED, LocalEventChannel

from conftest import build_facade


def run(facade, scenario):
    async def main():
        try:
            return await scenario()
        finally:
            await facade.aclose()

    return asyncio.run(main())


def _added(backend, session_id, text):
    return {"sessionId": session_id, "data": backend.make_entry(session_id, "note", {"text": text})}


def test_open_subscribes_and_close_detaches(facade, channel):
    async def scenario():
        await facade.open("S1")
        assert facade.push_enabled
        assert channel.rooms == {"S1"}
        assert channel.handler_count(SESSION_DATA_ADDED) == 1
        assert channel.handler_count(SESSION_DATA_DELETED) == 1

        assert await facade.close("S1")
        assert facade.session_id is None
        assert channel.rooms == set()
        assert channel.handler_count(SESSION_DATA_ADDED) == 0
        assert not await facade.close("S1")

    run(facade, scenario)


def test_opening_another_session_closes_the_first(facade, channel, backend):
    async def scenario():
        store = await facade.open("S1")
        assert await facade.open(" S1 ") is store
        await facade.open("S2")
        assert facade.session_id == "S2"
        assert channel.rooms == {"S2"}
        assert channel.handler_count(SESSION_DATA_ADDED) == 1
        assert not await facade.close("S1")

    run(facade, scenario)


def test_initial_fetch_populates_store(facade, backend):
    backend.sessions["S1"]["notes"].append(backend.make_entry("S1", "note", {"text": "on scene"}))

    async def scenario():
        store = await facade.open("S1")
        assert [artifact.content.text for artifact in store.notes] == ["on scene"]
        assert store.counts["notes"] == 1

    run(facade, scenario)


def test_push_events_for_other_sessions_are_ignored(facade, channel, backend):
    async def scenario():
        store = await facade.open("S1")
        channel.emit(SESSION_DATA_ADDED, _added(backend, "S2", "elsewhere"))
        assert len(store) == 0

        event = _added(backend, "S1", "GCS 15")
        channel.emit(SESSION_DATA_ADDED, event)
        channel.emit(SESSION_DATA_ADDED, event)
        assert [str(artifact.id) for artifact in store.notes] == [str(event["data"]["id"])]

        channel.emit(SESSION_DATA_DELETED, {"sessionId": "S2", "dataId": event["data"]["id"]})
        assert len(store) == 1
        channel.emit(SESSION_DATA_DELETED, {"sessionId": "S1", "dataId": event["data"]["id"]})
        assert len(store) == 0

    run(facade, scenario)


def test_disconnected_channel_falls_back_to_fetch_on_demand(backend, vendor):
    channel = LocalEventChannel(connected=False)
    facade = build_facade(backend, vendor, channel)

    async def scenario():
        store = await facade.open("S1")
        assert not facade.push_enabled
        backend.sessions["S1"]["notes"].append(backend.make_entry("S1", "note", {"text": "late"}))
        await facade.refresh()
        assert [artifact.content.text for artifact in store.notes] == ["late"]

    run(facade, scenario)


def test_failed_initial_fetch_is_reported_not_raised(facade, backend):
    backend.fail_fetch = True

    async def scenario():
        store = await facade.open("S1")
        assert len(store) == 0
        assert facade.fetch_error.message == "Database unavailable"
        backend.fail_fetch = False
        await facade.refresh()
        assert facade.fetch_error is None

    run(facade, scenario)


def test_add_note_confirms_optimistic_entry(facade, channel, backend):
    async def scenario():
        store = await facade.open("S1")
        artifact = await facade.add_note("BP stable")

        assert artifact.id == Confirmed("77")
        assert [str(a.id) for a in store.notes] == ["77"]
        assert backend.sessions["S1"]["notes"][0]["content"] == {"text": "BP stable"}

        channel.emit(SESSION_DATA_ADDED, {"sessionId": "S1", "data": backend.sessions["S1"]["notes"][0]})
        assert store.counts["notes"] == 1

        assert await facade.delete_artifact(77)
        assert store.counts == {"notes": 0, "medications": 0, "files": 0}
        assert backend.requests[-1].method == "DELETE"

        channel.emit(SESSION_DATA_ADDED, {"sessionId": "S1", "data": {"id": 77, "dataType": "note", "content": {"text": "BP stable"}}})
        assert len(store) == 0

    run(facade, scenario)


def test_rejected_write_rolls_back(facade, backend):
    backend.reject_writes = True

    async def scenario():
        store = await facade.open("S1")
        with pytest.raises(BackendError) as excinfo:
            await facade.add_medication("Aspirin", "300mg")
        assert excinfo.value.status == 400
        assert len(store) == 0

    run(facade, scenario)


def test_invalid_input_never_reaches_backend(facade, backend):
    async def scenario():
        await facade.open("S1")
        sent = len(backend.requests)
        with pytest.raises(InvalidInput) as excinfo:
            await facade.add_note("   ")
        assert excinfo.value.message == "Please enter a note"
        with pytest.raises(InvalidInput) as excinfo:
            await facade.add_medication("Aspirin", "")
        assert excinfo.value.message == "Please enter medication name and dosage"
        with pytest.raises(InvalidInput):
            await facade.add_artifact("vital", {"text": "x"})
        with pytest.raises(InvalidInput):
            await facade.delete_artifact(Pending.new())
        assert len(backend.requests) == sent
        assert len(facade.store) == 0

    run(facade, scenario)


def test_upload_size_limit_and_success(facade, backend):
    async def scenario():
        store = await facade.open("S1")
        with pytest.raises(InvalidInput) as excinfo:
            await facade.upload_file(FileUpload("scan.bin", b"x" * (10 * 1024 * 1024 + 1)))
        assert excinfo.value.message == "File size must be less than 10MB"
        assert len(store) == 0

        artifact = await facade.upload_file(FileUpload("ecg.pdf", b"%PDF-1.4", "application/pdf"))
        assert artifact.kind is ArtifactKind.file
        assert artifact.content.relative_path == "/uploads/session-files/ecg.pdf"
        assert [a.content.filename for a in store.files] == ["ecg.pdf"]
        assert await facade.download_file(artifact.id) == b"%PDF-1.4 scan"

    run(facade, scenario)


def test_operations_require_open_session(facade):
    async def scenario():
        with pytest.raises(InvalidInput):
            await facade.add_note("x")
        with pytest.raises(InvalidInput):
            await facade.get_camera_playback_url("D1")
        with pytest.raises(InvalidInput):
            await facade.open(None)

    run(facade, scenario)


def test_camera_url_cached_per_device(facade, vendor):
    async def scenario():
        await facade.open("S1")
        first = await facade.get_camera_playback_url("D1", 0)
        second = await facade.get_camera_playback_url({"id": "D1"}, 2)

        assert "jsession=tok-1" in first and first.endswith("channel=1&chns=0")
        assert second.endswith("channel=1&chns=2")
        assert second.count("chns=") == 1
        assert len(vendor.calls) == 1
        assert "D1" in facade.stream_cache

    run(facade, scenario)


def test_credentials_invalid_clears_cached_url(facade, vendor):
    vendor.respond(
        {"result": 0, "jsession": "tok-1"},
        httpx.Response(401, json={"message": "Session expired"}),
        {"result": 0, "jsession": "tok-2"},
    )

    async def scenario():
        await facade.open("S1")
        await facade.get_camera_playback_url("D1")
        with pytest.raises(CredentialsInvalid) as excinfo:
            await facade.get_camera_playback_url("D1", force=True)
        assert excinfo.value.device_id == "D1"
        assert "D1" not in facade.stream_cache

        url = await facade.get_camera_playback_url("D1")
        assert "jsession=tok-2" in url
        assert len(vendor.calls) == 3

    run(facade, scenario)


async def _logins_started(vendor, count=1):
    while len(vendor.calls) < count:
        await asyncio.sleep(0)


def test_close_cancels_inflight_resolution(facade, vendor):
    async def scenario():
        vendor.gate = asyncio.Event()
        await facade.open("S1")
        pending = asyncio.create_task(facade.get_camera_playback_url("D1"))
        await _logins_started(vendor)

        await facade.close("S1")

        with pytest.raises(ResolutionCancelled):
            await pending

    run(facade, scenario)


def test_switching_device_cancels_and_drops_other_devices(facade, backend, vendor):
    backend.devices["D2"] = dict(backend.devices["D1"], deviceId="CAM-0043")

    async def scenario():
        await facade.open("S1")
        await facade.get_camera_playback_url("D2")
        assert "D2" in facade.stream_cache

        vendor.gate = asyncio.Event()
        pending = asyncio.create_task(facade.get_camera_playback_url("D1"))
        await _logins_started(vendor, 2)

        assert facade.select_device("D2") == "D2"
        with pytest.raises(ResolutionCancelled):
            await pending
        assert "D1" not in facade.stream_cache
        assert "D2" in facade.stream_cache

        facade.select_device("D1")
        assert len(facade.stream_cache) == 0

    run(facade, scenario)


def test_camera_index_beyond_channel_limit_rejected(facade, backend):
    async def scenario():
        await facade.open("S1")
        with pytest.raises(InvalidInput):
            await facade.get_camera_playback_url("D1", 4)
        with pytest.raises(InvalidInput):
            await facade.get_camera_playback_url("D1", -1)
        assert not any("/stream" in request.url.path for request in backend.requests)

    run(facade, scenario)


def test_concurrent_channels_share_one_resolution(facade, vendor):
    async def scenario():
        vendor.gate = asyncio.Event()
        await facade.open("S1")
        requests = asyncio.gather(*(facade.get_camera_playback_url("D1", index) for index in range(4)))
        await _logins_started(vendor)
        vendor.gate.set()

        urls = await requests

        assert [url.rsplit("chns=", 1)[1] for url in urls] == ["0", "1", "2", "3"]
        assert all("jsession=tok-1" in url for url in urls)
        assert len(vendor.calls) == 1
        assert "D1" in facade.stream_cache

    run(facade, scenario)


def test_abandoned_request_leaves_shared_resolution_running(facade, vendor):
    async def scenario():
        vendor.gate = asyncio.Event()
        await facade.open("S1")
        first = asyncio.create_task(facade.get_camera_playback_url("D1", 0))
        await _logins_started(vendor)
        second = asyncio.create_task(facade.get_camera_playback_url("D1", 1))
        await asyncio.sleep(0)

        first.cancel()
        vendor.gate.set()

        assert (await second).endswith("chns=1")
        assert first.cancelled()
        assert len(vendor.calls) == 1

    run(facade, scenario)


def test_device_channel_count_limits_camera_index(facade, backend):
    async def scenario():
        await facade.open("S1")
        with pytest.raises(InvalidInput):
            await facade.get_camera_playback_url({"id": "D1", "channels": 2}, 2)
        url = await facade.get_camera_playback_url({"id": "D1", "channels": 2}, 1)
        assert url.endswith("chns=1")

    run(facade, scenario)
