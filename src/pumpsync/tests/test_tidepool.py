"""Tests for the Tidepool sink — encoding and HTTP error mapping."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from src.pumpsync.base import DeviceEvent, DeviceEventKind, DoseInterval, DoseKind
from src.pumpsync.errors import UploadError
from src.pumpsync.sinks.tidepool import (
    TidepoolSink,
    encode_carb,
    encode_device_event,
    encode_dose,
    encode_glucose,
)
from src.pumpsync.tests.conftest import at, carb, glucose

DATA_URL = "https://tidepool.test/v1/datasets/ds-1/data"


def closed_basal() -> DoseInterval:
    return DoseInterval(
        kind=DoseKind.TEMP_BASAL, start=at(0), end=at(30), volume=0.5, scheduled_rate=1.0, sync_id="tb-0"
    )


def make_sink(response: httpx.Response | None = None, error: Exception | None = None) -> tuple[TidepoolSink, MagicMock]:
    client = MagicMock(spec=httpx.AsyncClient)
    if error is not None:
        client.request = AsyncMock(side_effect=error)
    else:
        client.request = AsyncMock(return_value=response)
    sink = TidepoolSink(
        api_url="https://tidepool.test/",
        dataset_id="ds-1",
        session_token="tok",
        http_client=client,
    )
    return sink, client


def response(status: int) -> httpx.Response:
    return httpx.Response(status, request=httpx.Request("POST", DATA_URL))


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


class TestEncodeDose:
    def test_temp_basal(self) -> None:
        datum = encode_dose(closed_basal())
        assert datum["type"] == "basal"
        assert datum["deliveryType"] == "temp"
        assert datum["time"] == "2026-03-01T08:00:00.000Z"
        assert datum["duration"] == 30 * 60 * 1000
        assert datum["rate"] == 1.0
        assert datum["payload"]["deliveredUnits"] == 0.5
        assert datum["origin"] == {"id": "tb-0"}

    def test_bolus(self) -> None:
        dose = DoseInterval(kind=DoseKind.BOLUS, start=at(40), end=at(40), volume=2.0, sync_id="b")
        datum = encode_dose(dose)
        assert (datum["type"], datum["subType"], datum["normal"]) == ("bolus", "normal", 2.0)

    def test_open_dose_and_resume_are_held_back(self) -> None:
        open_basal = DoseInterval(kind=DoseKind.TEMP_BASAL, start=at(0), scheduled_rate=1.0, is_mutable=True)
        assert encode_dose(open_basal) is None
        assert encode_dose(DoseInterval.resume_marker(at(5))) is None

    def test_suspend_marker(self) -> None:
        datum = encode_dose(DoseInterval.suspend_marker(at(5), "s1"))
        assert datum["deliveryType"] == "suspend"


class TestEncodeOthers:
    def test_device_event_with_note(self) -> None:
        event = DeviceEvent(kind=DeviceEventKind.SUSPEND, timestamp=at(5), raw_id="s1", title="Low reservoir")
        datum = encode_device_event(event)
        assert datum["type"] == "deviceEvent"
        assert datum["status"] == "suspended"
        assert datum["notes"] == ["Low reservoir"]

    def test_carb_and_glucose(self) -> None:
        food = encode_carb(carb(0, 30, event_id="c1"))
        assert food["nutrition"]["carbohydrate"] == {"net": 30, "units": "grams"}

        cbg = encode_glucose(glucose(0, 123, "g1"))
        assert (cbg["type"], cbg["value"], cbg["units"]) == ("cbg", 123, "mg/dL")
        assert "trend" not in cbg


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


class TestUploads:
    @pytest.mark.asyncio
    async def test_posts_closed_doses_and_deletes_by_origin(self) -> None:
        sink, client = make_sink(response(200))

        await sink.upload_doses([closed_basal()], [], [closed_basal()])

        assert client.request.await_count == 2
        post, delete = client.request.await_args_list
        assert post.args == ("POST", DATA_URL)
        assert post.kwargs["headers"]["X-Tidepool-Session-Token"] == "tok"
        assert len(post.kwargs["json"]) == 1
        assert delete.args == ("DELETE", DATA_URL)
        assert delete.kwargs["json"] == [{"origin": {"id": "tb-0"}}]

    @pytest.mark.asyncio
    async def test_only_open_doses_sends_nothing(self) -> None:
        sink, client = make_sink(response(200))
        open_basal = DoseInterval(kind=DoseKind.TEMP_BASAL, start=at(0), is_mutable=True)
        await sink.upload_doses([open_basal], [], [])
        client.request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_http_error_becomes_upload_error(self) -> None:
        sink, _ = make_sink(response(500))
        with pytest.raises(UploadError) as exc_info:
            await sink.upload_glucose([glucose(0, 100, "g1")])
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_transport_error_becomes_upload_error(self) -> None:
        sink, _ = make_sink(error=httpx.ConnectError("refused"))
        with pytest.raises(UploadError, match="failed"):
            await sink.upload_carbs([carb(0, 10)], [], [])

    @pytest.mark.asyncio
    async def test_missing_dataset_id(self, monkeypatch) -> None:
        monkeypatch.delenv("TIDEPOOL_DATASET_ID", raising=False)
        sink = TidepoolSink(api_url="https://tidepool.test", dataset_id=None, http_client=MagicMock())
        with pytest.raises(UploadError, match="dataset id"):
            await sink.upload_glucose([glucose(0, 100, "g1")])


class TestRawState:
    def test_token_is_not_persisted(self) -> None:
        sink, _ = make_sink()
        assert "session_token" not in sink.raw_state
        assert sink.raw_value["serviceIdentifier"] == "tidepool"

    def test_round_trips_through_raw_state(self) -> None:
        sink, _ = make_sink()
        restored = TidepoolSink.from_raw_state(sink.raw_state)
        assert restored.raw_state == sink.raw_state
