import io
from datetime import datetime, timedelta, timezone

import pytest
from PIL import Image


class FakeClock:
    """Manually advanced clock; returns floats or aware datetimes."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDateClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def date_clock():
    # Среда 2024-01-03 20:00 по Сингапуру
    return FakeDateClock(datetime(2024, 1, 3, 12, 0, tzinfo=timezone.utc))


def make_image(size=(64, 48), fmt="JPEG", color=(120, 160, 90), exif=None) -> bytes:
    out = io.BytesIO()
    img = Image.new("RGB", size, color)
    if exif is not None:
        img.save(out, format=fmt, exif=exif)
    else:
        img.save(out, format=fmt)
    return out.getvalue()
