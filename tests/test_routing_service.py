import httpx
import pytest

from scm_dispatch.services.routing_service import (
    RoutingService,
    haversine_distance,
    valid_coordinates,
)

MUMBAI = (19.0760, 72.8777)
PUNE = (18.5204, 73.8567)


def osrm(handler) -> RoutingService:
    return RoutingService(base_url="http://osrm.test/", transport=httpx.MockTransport(handler))


class TestRoutingService:
    @pytest.mark.asyncio
    async def test_osrm_route(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={
                "code": "Ok",
                "routes": [{"distance": 148_350.0, "duration": 10_800.0}],
            })

        result = await osrm(handler).get_driving_distance(MUMBAI, PUNE)

        assert result.method == "osrm"
        assert result.success is True
        assert result.distance_km == 148.35
        assert result.duration_minutes == 180
        # OSRM takes lon,lat pairs
        assert seen[0].url.path == "/route/v1/driving/72.8777,19.076;73.8567,18.5204"
        assert seen[0].url.params["overview"] == "false"

    @pytest.mark.asyncio
    async def test_server_error_falls_back_to_haversine(self):
        service = osrm(lambda request: httpx.Response(503))

        result = await service.get_driving_distance(MUMBAI, PUNE)

        expected = round(haversine_distance(*MUMBAI, *PUNE) * 1.25, 2)
        assert result.method == "haversine_fallback"
        assert result.success is False
        assert result.distance_km == expected
        assert result.duration_minutes == round(expected / 60 * 60)
        assert "503" in result.fallback_reason

    @pytest.mark.asyncio
    async def test_no_route_falls_back(self):
        service = osrm(lambda request: httpx.Response(200, json={"code": "NoRoute", "routes": []}))

        result = await service.get_driving_distance(MUMBAI, PUNE)

        assert result.method == "haversine_fallback"
        assert "NoRoute" in result.fallback_reason

    @pytest.mark.asyncio
    async def test_connection_error_falls_back(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = await osrm(handler).get_driving_distance(MUMBAI, PUNE)

        assert result.method == "haversine_fallback"

    @pytest.mark.asyncio
    async def test_missing_coordinates_use_default_distance(self):
        def handler(request):
            raise AssertionError("OSRM must not be called")

        result = await osrm(handler).get_driving_distance(None, PUNE)

        assert result.method == "default"
        assert result.distance_km == 500.0
        assert result.duration_minutes == 500


class TestGeometry:
    def test_haversine_mumbai_pune(self):
        assert 118 < haversine_distance(*MUMBAI, *PUNE) < 122

    def test_haversine_same_point(self):
        assert haversine_distance(*MUMBAI, *MUMBAI) == 0

    @pytest.mark.parametrize("coords,valid", [
        ((19.07, 72.87), True),
        ((91.0, 72.87), False),
        ((19.07, -181.0), False),
        (("19.07", 72.87), False),
        (None, False),
        ((19.07,), False),
    ])
    def test_valid_coordinates(self, coords, valid):
        assert valid_coordinates(coords) is valid
