import hashlib
import json
from datetime import datetime, timezone as dt_timezone
from unittest import mock

import pytest
from django.db import connection
from django.test.utils import CaptureQueriesContext
from django.utils import timezone

from api.catalog.config import CrawlerOptions
from api.catalog.exceptions import ExclusionRejection, MalformedPayloadError
from api.catalog.models import Actor, Category, Episode, Movie, Tag
from api.catalog.reconciliation import ReconciliationEngine
from conftest import body_of

pytestmark = pytest.mark.django_db

WRITES = ("INSERT", "UPDATE", "DELETE")


def writes_in(queries):
    return [q["sql"] for q in queries.captured_queries if q["sql"].lstrip().upper().startswith(WRITES)]


def server(name, *entries):
    return {"server_name": name, "server_data": list(entries)}


def entry(name, m3u8="", embed=""):
    return {"name": name, "slug": name.lower(), "link_m3u8": m3u8, "link_embed": embed}


def episodes_of(movie):
    return list(movie.episodes.values_list("server", "name", "type", "link"))


class TestCreate:
    def test_new_movie_with_bookkeeping(self, engine, payload):
        body = body_of(payload)

        assert engine.reconcile(body) is True

        movie = Movie.objects.get()
        assert movie.name == "Người Nhện: Không Còn Nhà"
        assert movie.type == "single"
        assert movie.thumb_url == payload["movie"]["thumb_url"]
        assert movie.update_handler == "api.catalog.reconciliation.ReconciliationEngine"
        assert movie.update_identity == "64a1f0c2e9b1"
        assert movie.update_checksum == hashlib.md5(body.encode("utf-8")).hexdigest()
        assert movie.created_at == datetime(2022, 1, 10, 8, 30, tzinfo=dt_timezone.utc)
        assert movie.updated_at == datetime(2022, 3, 1, 12, 0, tzinfo=dt_timezone.utc)

    def test_missing_remote_times_fall_back_independently(self, engine, payload):
        del payload["movie"]["modified"]
        before = timezone.now()

        engine.reconcile(body_of(payload))

        movie = Movie.objects.get()
        assert movie.created_at == datetime(2022, 1, 10, 8, 30, tzinfo=dt_timezone.utc)
        assert movie.updated_at >= before

    def test_bytes_body(self, engine, payload):
        assert engine.reconcile(body_of(payload).encode("utf-8")) is True
        assert Movie.objects.count() == 1


class TestChangeGate:
    def test_same_payload_twice_writes_nothing(self, engine, payload):
        body = body_of(payload)
        engine.reconcile(body)

        with CaptureQueriesContext(connection) as queries:
            assert engine.reconcile(body) is False

        assert writes_in(queries) == []

    def test_force_update_reapplies(self, engine, payload):
        body = body_of(payload)
        engine.reconcile(body)

        assert engine.reconcile(body, force_update=True) is True
        assert Movie.objects.count() == 1

    def test_update_respects_field_whitelist(self, engine, payload):
        engine.reconcile(body_of(payload))
        payload["movie"]["name"] = "Người Nhện 3"
        payload["movie"]["quality"] = "FHD"
        payload["movie"]["modified"]["time"] = "2022-04-01T00:00:00Z"
        body = body_of(payload)

        assert engine.reconcile(body, fields=["name"]) is True

        movie = Movie.objects.get()
        assert movie.name == "Người Nhện 3"
        assert movie.quality == "HD"
        assert movie.update_checksum == hashlib.md5(body.encode("utf-8")).hexdigest()
        assert movie.updated_at == datetime(2022, 4, 1, tzinfo=dt_timezone.utc)

    def test_other_handler_is_a_different_record(self, engine, payload):
        Movie.objects.create(name="Other source", slug="other", update_handler="another.Crawler",
                             update_identity=payload["movie"]["_id"], update_checksum="x")

        assert engine.reconcile(body_of(payload)) is True
        assert Movie.objects.count() == 2

    def test_failed_sync_rolls_back_the_checksum(self, engine, payload):
        with mock.patch.object(ReconciliationEngine, "sync_episodes", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                engine.reconcile(body_of(payload))

        assert Movie.objects.count() == 0
        assert engine.reconcile(body_of(payload)) is True


class TestRejections:
    def make_engine(self, engine, **exclusions):
        options = CrawlerOptions(download_image=False, **exclusions)
        return ReconciliationEngine(options, normalizer=engine.normalizer)

    def test_excluded_type_never_touches_the_catalog(self, engine, payload):
        payload["movie"]["type"] = "hoathinh"
        engine = self.make_engine(engine, excluded_types=frozenset({"hoathinh"}))

        with CaptureQueriesContext(connection) as queries:
            with pytest.raises(ExclusionRejection) as exc:
                engine.reconcile(body_of(payload))

        assert exc.value.kind == "type"
        assert queries.captured_queries == []
        assert Movie.objects.count() == 0

    def test_excluded_category(self, engine, payload):
        engine = self.make_engine(engine, excluded_categories=frozenset({"Hành Động"}))

        with pytest.raises(ExclusionRejection, match="Hành Động"):
            engine.reconcile(body_of(payload))

    def test_excluded_region(self, engine, payload):
        engine = self.make_engine(engine, excluded_regions=frozenset({"Âu Mỹ", "Hàn Quốc"}))

        with pytest.raises(ExclusionRejection) as exc:
            engine.reconcile(body_of(payload))
        assert exc.value.values == ("Âu Mỹ",)

    @pytest.mark.parametrize("body", ["<html>502</html>", json.dumps({"status": False, "msg": "not found"}),
                                      json.dumps({"movie": {}}), json.dumps([1, 2])])
    def test_malformed_payload(self, engine, body):
        with pytest.raises(MalformedPayloadError):
            engine.reconcile(body)

    def test_missing_identity(self, engine, payload):
        del payload["movie"]["_id"]

        with pytest.raises(MalformedPayloadError):
            engine.reconcile(body_of(payload))


class TestAssociations:
    def test_actor_names_differing_by_case_and_spacing_are_one_actor(self, engine, payload):
        payload["movie"]["actor"] = ["A", "a "]

        engine.reconcile(body_of(payload))

        movie = Movie.objects.get()
        assert movie.actors.count() == 1
        actor = Actor.objects.get()
        assert actor.name == "A"
        assert actor.name_normalized == "a"

    def test_actor_normalization(self):
        assert ReconciliationEngine.normalize_actor_name("  Robert   Downey, Jr. ") == "robert downey jr"
        assert ReconciliationEngine.normalize_actor_name("Trấn Thành") == "trấn thành"

    def test_actor_set_is_replaced(self, engine, payload):
        engine.reconcile(body_of(payload))
        payload["movie"]["actor"] = ["Zendaya", "Benedict Cumberbatch", ""]

        engine.reconcile(body_of(payload))

        names = set(Movie.objects.get().actors.values_list("name", flat=True))
        assert names == {"Zendaya", "Benedict Cumberbatch"}
        assert Actor.objects.filter(name_normalized="zendaya").count() == 1

    def test_actor_string_is_split(self, engine, payload):
        payload["movie"]["actor"] = "Tom Holland, Zendaya,  "

        engine.reconcile(body_of(payload))

        assert Movie.objects.get().actors.count() == 2

    def test_bad_actor_is_skipped(self, engine, payload):
        payload["movie"]["actor"] = ["Tom Holland", "???", "Zendaya"]

        engine.reconcile(body_of(payload))

        assert set(Movie.objects.get().actors.values_list("name", flat=True)) == {"Tom Holland", "Zendaya"}

    def test_actor_slugs_are_unique(self, engine, payload):
        payload["movie"]["actor"] = ["Tú", "Tu"]

        engine.reconcile(body_of(payload))

        slugs = list(Actor.objects.values_list("slug", flat=True))
        assert len(set(slugs)) == 2
        assert all(slug.startswith("tu-") for slug in slugs)

    def test_directors_regions_and_tags(self, engine, payload):
        engine.reconcile(body_of(payload))

        movie = Movie.objects.get()
        assert list(movie.directors.values_list("name", flat=True)) == ["Jon Watts"]
        assert list(movie.regions.values_list("name", flat=True)) == ["Âu Mỹ"]
        assert set(movie.tags.values_list("name", flat=True)) == {
            "Người Nhện: Không Còn Nhà", "Spider-Man: No Way Home"}

    @pytest.mark.parametrize("movie_type, extra", [("hoathinh", "Hoạt Hình"), ("tvshows", "TV Shows")])
    def test_special_types_add_a_category(self, engine, payload, movie_type, extra):
        payload["movie"]["type"] = movie_type

        engine.reconcile(body_of(payload))

        names = set(Movie.objects.get().categories.values_list("name", flat=True))
        assert names == {"Hành Động", extra}

    def test_shared_names_are_reused(self, engine, payload):
        engine.reconcile(body_of(payload))
        payload["movie"]["_id"] = "another-id"
        payload["movie"]["origin_name"] = "Spider-Man 3"

        engine.reconcile(body_of(payload))

        assert Category.objects.count() == 1
        assert Tag.objects.filter(name="Người Nhện: Không Còn Nhà").count() == 1

    def test_studios_are_left_alone(self, engine, payload):
        engine.reconcile(body_of(payload), fields=["name", "studios"])

        assert Movie.objects.get().studios.count() == 0

    def test_associations_outside_fields_are_untouched(self, engine, payload):
        engine.reconcile(body_of(payload))
        payload["movie"]["actor"] = ["Someone Else"]
        payload["movie"]["category"] = [{"name": "Hài Hước"}]

        engine.reconcile(body_of(payload), fields=["name", "categories"])

        movie = Movie.objects.get()
        assert set(movie.actors.values_list("name", flat=True)) == {"Tom Holland", "Zendaya"}
        assert list(movie.categories.values_list("name", flat=True)) == ["Hài Hước"]


class TestEpisodes:
    def test_full_movie_with_two_direct_links_is_a_series(self, engine, payload):
        del payload["movie"]["type"]
        payload["movie"]["episode_current"] = "Full"
        payload["episodes"] = [server(
            "Vietsub #1",
            entry("Tập 1", m3u8="https://stream.example/1.m3u8"),
            entry("Tập 2", m3u8="https://stream.example/2.m3u8"),
        )]

        engine.reconcile(body_of(payload))

        movie = Movie.objects.get()
        assert movie.type == "series"
        assert list(movie.episodes.values_list("name", "type", "slug")) == [
            ("Tập 1", "direct", "tap-tap-1"),
            ("Tập 2", "direct", "tap-tap-2"),
        ]

    def test_direct_then_embed_per_entry(self, engine, payload):
        engine.reconcile(body_of(payload))

        assert episodes_of(Movie.objects.get()) == [
            ("Vietsub #1", "Full", "direct", "https://stream.ophim.live/abc/index.m3u8"),
            ("Vietsub #1", "Full", "embed", "https://player.ophim.live/share/abc"),
        ]

    def test_shrunk_list_converges(self, engine, payload):
        payload["episodes"] = [server(
            "Vietsub #1", *[entry(f"{i}", m3u8=f"https://stream.example/{i}.m3u8") for i in range(1, 5)])]
        engine.reconcile(body_of(payload))
        first_ids = list(Movie.objects.get().episodes.values_list("id", flat=True))

        payload["episodes"] = [server(
            "Vietsub #1", *[entry(f"{i}", m3u8=f"https://stream.example/{i}.m3u8") for i in range(1, 3)])]
        engine.reconcile(body_of(payload))

        movie = Movie.objects.get()
        assert [name for _, name, _, _ in episodes_of(movie)] == ["1", "2"]
        assert list(movie.episodes.values_list("id", flat=True)) == first_ids[:2]
        assert Episode.objects.count() == 2

    def test_reordered_servers_keep_episode_rows(self, engine, payload):
        payload["episodes"] = [
            server("Vietsub", entry("1", m3u8="https://a.example/1.m3u8")),
            server("Thuyết Minh", entry("1", m3u8="https://b.example/1.m3u8")),
        ]
        engine.reconcile(body_of(payload))
        ids = dict(Episode.objects.values_list("server", "id"))

        payload["episodes"].reverse()
        engine.reconcile(body_of(payload))

        movie = Movie.objects.get()
        assert [s for s, _, _, _ in episodes_of(movie)] == ["Thuyết Minh", "Vietsub"]
        assert dict(Episode.objects.values_list("server", "id")) == ids

    def test_renamed_episode_reuses_its_position(self, engine, payload):
        payload["episodes"] = [server("Vietsub", entry("1", m3u8="https://a.example/1.m3u8"))]
        engine.reconcile(body_of(payload))
        episode_id = Episode.objects.get().id

        payload["episodes"] = [server("Vietsub", entry("Tập 01", m3u8="https://a.example/01.m3u8"))]
        engine.reconcile(body_of(payload))

        episode = Episode.objects.get()
        assert episode.id == episode_id
        assert (episode.name, episode.link) == ("Tập 01", "https://a.example/01.m3u8")

    def test_empty_links_produce_no_slot(self, engine, payload):
        payload["episodes"] = [server("Vietsub", entry("Trailer"), entry("1", embed="https://p.example/1"))]

        engine.reconcile(body_of(payload))

        assert [t for _, _, t, _ in episodes_of(Movie.objects.get())] == ["embed"]

    def test_episodes_outside_fields_are_untouched(self, engine, payload):
        engine.reconcile(body_of(payload))
        payload["episodes"] = []

        engine.reconcile(body_of(payload), fields=["name"])

        assert Episode.objects.count() == 2
