import pytest
import responses

from errors import DataIntegrityError, ProviderUnavailable
from qibla import ALADHAN_QIBLA_URL, QiblaService, compass_image_url, fetch_qibla_direction


def test_bearing_is_fetched_once_per_location(store):
    service = QiblaService(store)

    with responses.RequestsMock() as mock:
        mock.add(
            responses.GET,
            f"{ALADHAN_QIBLA_URL}/52.37/4.9",
            json={"code": 200, "data": {"latitude": 52.37, "longitude": 4.9, "direction": 119.05}},
        )
        first = service.get_bearing(52.37, 4.9, "Amsterdam")
        second = service.get_bearing(52.37, 4.9, "Amsterdam")
        assert len(mock.calls) == 1

    assert first.bearing == pytest.approx(119.05)
    assert second == first
    assert service.last_known() == first


def test_missing_direction_is_integrity_error():
    with responses.RequestsMock() as mock:
        mock.add(responses.GET, f"{ALADHAN_QIBLA_URL}/1.0/2.0", json={"data": {}})
        with pytest.raises(DataIntegrityError):
            fetch_qibla_direction(1.0, 2.0)


def test_http_error_is_provider_unavailable():
    with responses.RequestsMock() as mock:
        mock.add(responses.GET, f"{ALADHAN_QIBLA_URL}/1.0/2.0", status=502)
        with pytest.raises(ProviderUnavailable):
            fetch_qibla_direction(1.0, 2.0)


def test_compass_url():
    assert compass_image_url(52.37, 4.9) == f"{ALADHAN_QIBLA_URL}/52.37/4.9/compass/512"
