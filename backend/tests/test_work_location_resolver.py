"""
Work Location Resolver - multi-site assignment with legacy fallback
"""
from services.work_location_resolver import WorkLocationResolver

from conftest import run


class TestMultiSite:

    def test_single_assigned_site(self, db):
        locations = run(WorkLocationResolver(db).resolve({"id": "EMP-001", "work_locations": ["site-hq"]}))
        assert [loc.id for loc in locations] == ["site-hq"]
        assert locations[0].radius_meters == 100
        assert locations[0].name == "Head Office"

    def test_keeps_employee_order(self, db):
        employee = {"id": "EMP-002", "work_locations": ["site-branch", "site-hq"]}
        locations = run(WorkLocationResolver(db).resolve(employee))
        assert [loc.id for loc in locations] == ["site-branch", "site-hq"]

    def test_inactive_and_unknown_sites_are_skipped(self, db):
        run(db.work_locations.insert_one({
            "id": "site-closed", "name": "Closed", "latitude": 9.1, "longitude": 38.8,
            "radius_meters": 100, "is_active": False
        }))
        employee = {"id": "EMP-009", "work_locations": ["site-closed", "site-missing", "site-hq"]}
        locations = run(WorkLocationResolver(db).resolve(employee))
        assert [loc.id for loc in locations] == ["site-hq"]

    def test_malformed_site_is_skipped(self, db):
        run(db.work_locations.insert_one({
            "id": "site-bad", "name": "Bad", "latitude": 9.1, "longitude": 38.8, "radius_meters": 0
        }))
        employee = {"id": "EMP-009", "work_locations": ["site-bad", "site-branch"]}
        locations = run(WorkLocationResolver(db).resolve(employee))
        assert [loc.id for loc in locations] == ["site-branch"]


class TestLegacyFallback:

    def test_legacy_embedded_site(self, db):
        employee = {
            "id": "EMP-OLD",
            "work_location": {"name": "Old HQ", "latitude": 9.0, "longitude": 38.7, "radius": 250},
        }
        locations = run(WorkLocationResolver(db).resolve(employee))
        assert len(locations) == 1
        assert locations[0].id == "legacy"
        assert locations[0].name == "Old HQ"
        assert locations[0].radius_meters == 250

    def test_legacy_site_under_personal_details_defaults_radius(self, db):
        employee = {
            "id": "EMP-OLD",
            "personal_details": {"work_location": {"name": "Old HQ", "latitude": 9.0, "longitude": 38.7}},
        }
        locations = run(WorkLocationResolver(db).resolve(employee))
        assert locations[0].radius_meters == 100

    def test_empty_modern_list_falls_back_to_legacy(self, db):
        employee = {
            "id": "EMP-OLD",
            "work_locations": [],
            "work_location": {"id": "old-1", "name": "Old HQ", "latitude": 9.0, "longitude": 38.7},
        }
        locations = run(WorkLocationResolver(db).resolve(employee))
        assert [loc.id for loc in locations] == ["old-1"]

    def test_modern_list_wins_over_legacy(self, db):
        employee = {
            "id": "EMP-BOTH",
            "work_locations": ["site-branch"],
            "work_location": {"name": "Old HQ", "latitude": 9.0, "longitude": 38.7},
        }
        locations = run(WorkLocationResolver(db).resolve(employee))
        assert [loc.id for loc in locations] == ["site-branch"]


class TestNoSites:

    def test_no_assignment_resolves_to_empty_list(self, db):
        assert run(WorkLocationResolver(db).resolve({"id": "EMP-NOSITE", "work_locations": []})) == []

    def test_legacy_without_coordinates_resolves_to_empty_list(self, db):
        employee = {"id": "EMP-X", "work_location": {"name": "Somewhere"}}
        assert run(WorkLocationResolver(db).resolve(employee)) == []
