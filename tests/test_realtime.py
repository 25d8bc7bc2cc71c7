"""
Tests for ingestion/gtfs_realtime.py.

Feeds are built as real FeedMessage protobufs (see conftest) and served
through respx; the schedule is a MagicMock so each name tier can be
switched on and off independently.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import httpx
import pytest
import respx
from google.transit import gtfs_realtime_pb2

from errors import ConfigurationError, DataFormatError, NetworkError
from ingestion.gtfs_realtime import (
    FeedCache,
    Prediction,
    RealtimeAdapter,
    fetch_feed,
    predictions_at_stop,
)
from schedule.common import TripSummary

TZ = ZoneInfo("America/Toronto")
NOW = datetime(2025, 6, 2, 8, 0, tzinfo=TZ)
NOW_EPOCH = int(NOW.timestamp())
TRIPS_URL = "https://rt.example.test/gtfsrt/trips"
ALERTS_URL = "https://rt.example.test/gtfsrt/alerts"


def served(feed: gtfs_realtime_pb2.FeedMessage) -> httpx.Response:
    return httpx.Response(200, content=feed.SerializePartialToString())


def fake_schedule(summaries=None, route_names=None) -> MagicMock:
    schedule = MagicMock()
    schedule.tz = TZ
    schedule.snapshot_trip_summaries = AsyncMock(return_value=summaries)
    schedule.archive_route_names = AsyncMock(return_value=route_names or {})
    return schedule


def make_adapter(schedule) -> RealtimeAdapter:
    return RealtimeAdapter(
        schedule,
        trip_updates_url=TRIPS_URL,
        alerts_url=ALERTS_URL,
        cache=FeedCache(),
        api_key="",
    )


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# FeedCache
# ---------------------------------------------------------------------------

class TestFeedCache:
    def test_hit_within_ttl(self):
        clock = FakeClock()
        cache = FeedCache(ttl_seconds=5, clock=clock)
        feed = gtfs_realtime_pb2.FeedMessage()
        cache.put(TRIPS_URL, feed)
        clock.now = 4.9
        assert cache.get(TRIPS_URL) is feed

    def test_expires_at_ttl(self):
        clock = FakeClock()
        cache = FeedCache(ttl_seconds=5, clock=clock)
        cache.put(TRIPS_URL, gtfs_realtime_pb2.FeedMessage())
        clock.now = 5
        assert cache.get(TRIPS_URL) is None

    def test_bounded(self):
        cache = FeedCache(max_entries=2)
        for url in ("a", "b", "c"):
            cache.put(url, gtfs_realtime_pb2.FeedMessage())
        assert len(cache) == 2
        assert cache.get("a") is None
        assert cache.get("c") is not None


# ---------------------------------------------------------------------------
# fetch_feed
# ---------------------------------------------------------------------------

class TestFetchFeed:
    async def test_empty_url_is_a_configuration_error(self):
        with pytest.raises(ConfigurationError):
            await fetch_feed("", api_key="")

    @respx.mock
    async def test_decodes_feed(self, trip_update_feed):
        respx.get(TRIPS_URL).mock(return_value=served(trip_update_feed([("T1", "R83A", "14523A", NOW_EPOCH)])))
        feed = await fetch_feed(TRIPS_URL, api_key="")
        assert feed.entity[0].trip_update.trip.trip_id == "T1"

    @respx.mock
    async def test_api_key_sent_as_query_parameter(self):
        route = respx.route(host="rt.example.test", path="/gtfsrt/trips").mock(
            return_value=served(gtfs_realtime_pb2.FeedMessage()),
        )
        await fetch_feed(TRIPS_URL, api_key="secret")
        assert route.calls.last.request.url.params["key"] == "secret"

    @respx.mock
    async def test_server_error_is_a_network_error(self):
        respx.get(TRIPS_URL).mock(return_value=httpx.Response(500))
        with pytest.raises(NetworkError):
            await fetch_feed(TRIPS_URL, api_key="")

    @respx.mock
    async def test_timeout_is_a_network_error(self):
        respx.get(TRIPS_URL).mock(side_effect=httpx.ConnectTimeout("slow"))
        with pytest.raises(NetworkError):
            await fetch_feed(TRIPS_URL, api_key="")

    @respx.mock
    async def test_garbage_body_is_a_format_error(self):
        respx.get(TRIPS_URL).mock(return_value=httpx.Response(200, content=b"not a protobuf"))
        with pytest.raises(DataFormatError):
            await fetch_feed(TRIPS_URL, api_key="")

    @respx.mock
    async def test_cache_absorbs_repeat_fetches(self):
        route = respx.get(TRIPS_URL).mock(return_value=served(gtfs_realtime_pb2.FeedMessage()))
        cache = FeedCache()
        first = await fetch_feed(TRIPS_URL, cache=cache, api_key="")
        second = await fetch_feed(TRIPS_URL, cache=cache, api_key="")
        assert first is second
        assert route.call_count == 1

    @respx.mock
    async def test_failures_are_not_cached(self):
        route = respx.get(TRIPS_URL).mock(side_effect=[
            httpx.Response(503),
            served(gtfs_realtime_pb2.FeedMessage()),
        ])
        cache = FeedCache()
        with pytest.raises(NetworkError):
            await fetch_feed(TRIPS_URL, cache=cache, api_key="")
        await fetch_feed(TRIPS_URL, cache=cache, api_key="")
        assert route.call_count == 2


# ---------------------------------------------------------------------------
# predictions_at_stop
# ---------------------------------------------------------------------------

class TestPredictionsAtStop:
    def test_matches_exact_stop_only(self, trip_update_feed):
        feed = trip_update_feed([
            ("T1", "R83A", "14523A", NOW_EPOCH + 300),
            ("T2", "R84", "14523B", NOW_EPOCH + 600),
        ])
        assert predictions_at_stop(feed, "14523A", NOW_EPOCH) == [Prediction("T1", "R83A", NOW_EPOCH + 300)]
        assert predictions_at_stop(feed, "14523", NOW_EPOCH) == []

    def test_past_predictions_dropped(self, trip_update_feed):
        feed = trip_update_feed([("T1", "R83A", "14523A", NOW_EPOCH - 1)])
        assert predictions_at_stop(feed, "14523A", NOW_EPOCH) == []

    def test_departure_used_when_no_arrival(self):
        feed = gtfs_realtime_pb2.FeedMessage()
        entity = feed.entity.add()
        entity.id = "1"
        entity.trip_update.trip.trip_id = "T3"
        stu = entity.trip_update.stop_time_update.add()
        stu.stop_id = "14523A"
        stu.departure.time = NOW_EPOCH + 120
        assert predictions_at_stop(feed, "14523A", NOW_EPOCH) == [Prediction("T3", "", NOW_EPOCH + 120)]

    def test_cancelled_trips_skipped(self, trip_update_feed):
        feed = trip_update_feed([("T1", "R83A", "14523A", NOW_EPOCH + 300)])
        feed.entity[0].trip_update.trip.schedule_relationship = gtfs_realtime_pb2.TripDescriptor.CANCELED
        assert predictions_at_stop(feed, "14523A", NOW_EPOCH) == []

    def test_skipped_stops_skipped(self, trip_update_feed):
        feed = trip_update_feed([("T1", "R83A", "14523A", NOW_EPOCH + 300)])
        feed.entity[0].trip_update.stop_time_update[0].schedule_relationship = (
            gtfs_realtime_pb2.TripUpdate.StopTimeUpdate.SKIPPED
        )
        assert predictions_at_stop(feed, "14523A", NOW_EPOCH) == []

    def test_alert_entities_ignored(self, sample_alert_feed):
        assert predictions_at_stop(sample_alert_feed, "14523A", 0) == []


# ---------------------------------------------------------------------------
# RealtimeAdapter.next_arrivals_at_stop
# ---------------------------------------------------------------------------

class TestNextArrivalsAtStop:
    @respx.mock
    async def test_names_and_headsigns_from_snapshot(self, trip_update_feed):
        respx.get(TRIPS_URL).mock(return_value=served(trip_update_feed([("T1", "R83A", "14523A", NOW_EPOCH + 300)])))
        schedule = fake_schedule(summaries={"T1": TripSummary("T1", "R83A", "83A", "North - 83A Jones")})

        records = await make_adapter(schedule).next_arrivals_at_stop("14523A", since_epoch=NOW_EPOCH)

        assert len(records) == 1
        rec = records[0]
        assert (rec.route_name, rec.headsign, rec.realtime) == ("83A", "North - 83A Jones", True)
        assert rec.when == datetime(2025, 6, 2, 8, 5, tzinfo=TZ)
        assert rec.when.tzinfo == TZ
        schedule.archive_route_names.assert_not_awaited()

    @respx.mock
    async def test_archive_route_names_when_snapshot_not_ready(self, trip_update_feed):
        respx.get(TRIPS_URL).mock(return_value=served(trip_update_feed([("T1", "R83A", "14523A", NOW_EPOCH + 300)])))
        schedule = fake_schedule(summaries=None, route_names={"R83A": "83A"})

        records = await make_adapter(schedule).next_arrivals_at_stop("14523A", since_epoch=NOW_EPOCH)

        assert [(r.route_name, r.headsign) for r in records] == [("83A", "")]
        schedule.archive_route_names.assert_awaited_once_with({"R83A"})

    @respx.mock
    async def test_unresolved_names_are_empty(self, trip_update_feed):
        respx.get(TRIPS_URL).mock(return_value=served(trip_update_feed([("T9", "", "14523A", NOW_EPOCH + 300)])))
        adapter = make_adapter(fake_schedule())

        records = await adapter.next_arrivals_at_stop("14523A", since_epoch=NOW_EPOCH)
        assert [r.route_name for r in records] == [""]

        filtered = await adapter.next_arrivals_at_stop("14523A", route_ref="83", since_epoch=NOW_EPOCH)
        assert filtered == []

    @respx.mock
    async def test_route_ref_prefix_filter(self, trip_update_feed):
        respx.get(TRIPS_URL).mock(return_value=served(trip_update_feed([
            ("T1", "R83A", "14523A", NOW_EPOCH + 300),
            ("T2", "R84", "14523A", NOW_EPOCH + 400),
            ("T3", "R183", "14523A", NOW_EPOCH + 500),
        ])))
        adapter = make_adapter(fake_schedule(route_names={"R83A": "83A", "R84": "84", "R183": "183"}))

        assert [r.route_name for r in await adapter.next_arrivals_at_stop(
            "14523A", route_ref="83", since_epoch=NOW_EPOCH,
        )] == ["83A"]
        assert [r.route_name for r in await adapter.next_arrivals_at_stop(
            "14523A", route_ref="84", since_epoch=NOW_EPOCH,
        )] == ["84"]

    @respx.mock
    async def test_sorted_and_capped(self, trip_update_feed):
        respx.get(TRIPS_URL).mock(return_value=served(trip_update_feed([
            ("T3", "R183", "14523A", NOW_EPOCH + 900),
            ("T1", "R83A", "14523A", NOW_EPOCH + 300),
            ("T2", "R84", "14523A", NOW_EPOCH + 600),
        ])))
        adapter = make_adapter(fake_schedule(route_names={"R83A": "83A", "R84": "84", "R183": "183"}))

        records = await adapter.next_arrivals_at_stop("14523A", limit=2, since_epoch=NOW_EPOCH)

        assert [r.route_name for r in records] == ["83A", "84"]

    @respx.mock
    async def test_no_predictions_skips_name_lookup(self, trip_update_feed):
        respx.get(TRIPS_URL).mock(return_value=served(trip_update_feed([])))
        schedule = fake_schedule()

        assert await make_adapter(schedule).next_arrivals_at_stop("14523A", since_epoch=NOW_EPOCH) == []
        schedule.snapshot_trip_summaries.assert_not_awaited()

    @respx.mock
    async def test_fetch_failure_propagates(self):
        respx.get(TRIPS_URL).mock(return_value=httpx.Response(503))
        with pytest.raises(NetworkError):
            await make_adapter(fake_schedule()).next_arrivals_at_stop("14523A")


# ---------------------------------------------------------------------------
# RealtimeAdapter.service_alerts
# ---------------------------------------------------------------------------

class TestServiceAlerts:
    @respx.mock
    async def test_all_alerts(self, sample_alert_feed):
        respx.get(ALERTS_URL).mock(return_value=served(sample_alert_feed))
        alerts = await make_adapter(fake_schedule()).service_alerts()
        assert [a.alert_id for a in alerts] == ["alert-83", "alert-504"]

    @respx.mock
    async def test_fields(self, sample_alert_feed):
        respx.get(ALERTS_URL).mock(return_value=served(sample_alert_feed))
        alert = (await make_adapter(fake_schedule()).service_alerts(route_ref="83"))[0]

        assert alert.header == "83 Jones detour"
        assert alert.description == "Buses diverting via Pape Ave."
        assert alert.affected_route_ids == ["83"]
        assert alert.affected_stop_ids == ["14523A"]
        assert alert.active_start == datetime(2025, 6, 2, 12, 0, tzinfo=timezone.utc)
        assert alert.active_end == datetime(2025, 6, 2, 16, 0, tzinfo=timezone.utc)
        assert alert.cause == "CONSTRUCTION"
        assert alert.effect == "DETOUR"

    @respx.mock
    async def test_route_filter_is_a_prefix(self, sample_alert_feed):
        respx.get(ALERTS_URL).mock(return_value=served(sample_alert_feed))
        adapter = make_adapter(fake_schedule())
        assert [a.alert_id for a in await adapter.service_alerts(route_ref="5")] == ["alert-504"]
        assert await adapter.service_alerts(route_ref="99") == []

    @respx.mock
    async def test_missing_text_and_period(self, sample_alert_feed):
        respx.get(ALERTS_URL).mock(return_value=served(sample_alert_feed))
        alert = (await make_adapter(fake_schedule()).service_alerts(route_ref="504"))[0]
        assert alert.description == ""
        assert alert.active_start is None and alert.active_end is None
