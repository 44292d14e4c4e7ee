import itertools
import json
import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, patch

import pytest
import requests

from config import Configuration
from services.catalog import (
    CatalogError,
    InMemoryCatalogStore,
    PostgrestCatalogStore,
    build_catalog,
    parse_venue_row,
    parse_venue_rows,
)

ROW = {
    "google_place_id": "ChIJ1",
    "name": "Taizu",
    "address": "Menachem Begin 23",
    "city": "Tel Aviv-Yafo",
    "latitude": "32.0627",
    "longitude": 34.7857,
    "google_rating": 4.6,
    "google_reviews_count": 3120,
    "price_level": 4,
    "categories": "restaurant, asian_restaurant",
    "opening_hours": {
        "periods": [{"open": {"day": 1, "time": "1900"}, "close": {"day": 1, "time": "2330"}}],
        "weekday_text": ["Monday: 7:00 – 11:30 PM"],
    },
    "photos": [{"photo_reference": "abc", "width": 400, "height": 300}, {"width": 10}],
    "summary": "Upscale pan-Asian tasting menus",
    "summary_embedding": "[0.1, 0.2, 0.3]",
    "reviews_embedding": [1, 0, 0],
}


def test_parse_venue_row_normalizes_store_shapes():
    venue = parse_venue_row(ROW)
    assert venue.id == "ChIJ1"
    assert venue.lat == pytest.approx(32.0627)
    assert venue.review_count == 3120
    assert venue.categories == ["restaurant", "asian_restaurant"]
    assert venue.summary_embedding == [0.1, 0.2, 0.3]
    assert venue.reviews_embedding == [1.0, 0.0, 0.0]
    assert venue.opening_hours.periods[0].close.time == "2330"
    assert [p.photo_reference for p in venue.photos] == ["abc"]


def test_parse_venue_row_tolerates_bad_fields():
    venue = parse_venue_row(
        {"id": "x", "name": "X", "price_level": 9, "summary_embedding": "not a vector", "opening_hours": "{}"}
    )
    assert venue.price_level is None
    assert venue.summary_embedding is None
    assert venue.opening_hours is None
    assert not venue.has_coordinates


def test_rows_without_identity_are_dropped():
    assert parse_venue_row({"name": "No id"}) is None
    assert parse_venue_row({"id": "no-name"}) is None
    assert [v.id for v in parse_venue_rows([ROW, {"name": "x"}, "junk"])] == ["ChIJ1"]


def test_in_memory_store_from_json(tmp_path):
    path = tmp_path / "venues.json"
    second = dict(ROW, google_place_id="ChIJ2", city="Haifa", latitude=32.79, longitude=34.99)
    path.write_text(json.dumps({"venues": [ROW, second]}), encoding="utf-8")
    store = InMemoryCatalogStore.from_json(path)

    assert len(store.fetch_all()) == 2
    assert [v.id for v in store.fetch_by_cities(["tel aviv"])] == ["ChIJ1"]
    assert [v.id for v in store.fetch_by_cities(["HAIFA", "jaffa"])] == ["ChIJ2"]
    assert store.fetch_by_cities(["", "  "]) == []
    assert [v.id for v in store.fetch_in_bbox((34.7, 32.0, 34.8, 32.1))] == ["ChIJ1"]


def test_build_catalog_requires_a_source(tmp_path):
    with pytest.raises(ValueError):
        build_catalog(Configuration())
    path = tmp_path / "venues.json"
    path.write_text("[]", encoding="utf-8")
    assert isinstance(build_catalog(Configuration(catalog_fixture_path=str(path))), InMemoryCatalogStore)
    assert isinstance(build_catalog(Configuration(catalog_url="https://db.example/rest/v1")), PostgrestCatalogStore)


def _response(status=200, payload=None):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 400
    resp.json.return_value = payload if payload is not None else []
    resp.text = json.dumps(payload) if payload is not None else ""
    return resp


class TestPostgrestCatalogStore(unittest.TestCase):
    def setUp(self):
        cfg = Configuration(catalog_url="https://db.example/rest/v1/", catalog_key="secret-key", catalog_max_rows=200)
        self.store = PostgrestCatalogStore(cfg)
        self.store.session = MagicMock()

    def _params(self):
        _, kwargs = self.store.session.get.call_args
        return kwargs["params"]

    def test_bbox_query_params_and_headers(self):
        self.store.session.get.return_value = _response(payload=[ROW])
        venues = self.store.fetch_in_bbox((34.7, 32.0, 34.8, 32.1))

        self.assertEqual([v.id for v in venues], ["ChIJ1"])
        args, kwargs = self.store.session.get.call_args
        self.assertEqual(args[0], "https://db.example/rest/v1/restaurant_cache")
        self.assertEqual(kwargs["headers"]["apikey"], "secret-key")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer secret-key")
        params = self._params()
        self.assertIn(("latitude", "gte.32.0"), params)
        self.assertIn(("longitude", "lte.34.8"), params)
        self.assertEqual(params[-1], ("limit", "200"))

    def test_single_city_uses_ilike(self):
        self.store.session.get.return_value = _response(payload=[])
        self.store.fetch_by_cities(["Haifa"])
        self.assertIn(("city", "ilike.*Haifa*"), self._params())

    def test_multiple_cities_use_or_clause(self):
        self.store.session.get.return_value = _response(payload=[])
        self.store.fetch_by_cities(["Tel Aviv", "Jaffa (Yafo)"])
        self.assertIn(("or", '(city.ilike."*Tel Aviv*",city.ilike."*Jaffa Yafo*")'), self._params())

    def test_results_are_cached(self):
        self.store.session.get.return_value = _response(payload=[ROW])
        self.store.fetch_all()
        self.store.fetch_all()
        self.assertEqual(self.store.session.get.call_count, 1)

    @patch("services.catalog.time.sleep")
    def test_retries_transient_status(self, mock_sleep):
        self.store.session.get.side_effect = [_response(503), _response(payload=[ROW])]
        venues = self.store.fetch_all()
        self.assertEqual(len(venues), 1)
        self.assertEqual(self.store.session.get.call_count, 2)
        mock_sleep.assert_called_once()

    @patch("services.catalog.time.sleep")
    def test_gives_up_after_retries(self, mock_sleep):
        self.store.session.get.return_value = _response(502)
        with self.assertRaises(CatalogError):
            self.store.fetch_all()
        self.assertEqual(self.store.session.get.call_count, 4)

    @patch("services.catalog.time.sleep")
    def test_network_errors_become_catalog_errors(self, mock_sleep):
        self.store.session.get.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(CatalogError):
            self.store.fetch_in_bbox((0, 0, 1, 1))

    def test_client_error_is_not_retried(self):
        self.store.session.get.return_value = _response(401, payload={"message": "bad key"})
        with self.assertRaises(CatalogError):
            self.store.fetch_all()
        self.assertEqual(self.store.session.get.call_count, 1)

    @patch("services.catalog.time.sleep")
    def test_no_retry_when_timeout_exceeds_pipeline_budget(self, mock_sleep):
        cfg = Configuration(catalog_url="https://db.example/rest/v1", catalog_timeout=15, pipeline_timeout_sec=10)
        store = PostgrestCatalogStore(cfg)
        store.session = MagicMock()
        store.session.get.return_value = _response(503)
        with self.assertRaises(CatalogError):
            store.fetch_all()
        self.assertEqual(store.session.get.call_count, 1)
        mock_sleep.assert_not_called()

    @patch("services.catalog.time.monotonic", side_effect=itertools.count(0.0, 20.0))
    @patch("services.catalog.time.sleep")
    def test_retries_stop_once_budget_is_spent(self, mock_sleep, mock_clock):
        self.store.session.get.side_effect = requests.Timeout("slow")
        with self.assertRaises(CatalogError):
            self.store.fetch_all()
        # 20s elapsed leaves room for one more 15s attempt, 40s does not
        self.assertEqual(self.store.session.get.call_count, 2)

    def test_cache_survives_concurrent_queries(self):
        self.store._cache_max = 2
        self.store.session.get.return_value = _response(payload=[ROW])
        boxes = [(34.0 + (i % 5) * 0.01, 32.0, 34.5, 32.5) for i in range(200)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(self.store.fetch_in_bbox, boxes))
        self.assertTrue(all([v.id for v in venues] == ["ChIJ1"] for venues in results))
        self.assertLessEqual(len(self.store._cache), 2)


if __name__ == "__main__":
    unittest.main()
