"""Test doubles and sample data shared by the fixtures and individual tests."""
from datetime import datetime, timedelta, timezone

FIXED_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = FIXED_NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class ScriptedProvider:
    """Geocoding provider answering from a fixed address table."""

    def __init__(self, name, results=None, fail=False):
        self.name = name
        self.results = results or {}
        self.fail = fail
        self.calls = []

    def geocode(self, address):
        self.calls.append(address)
        if self.fail:
            raise RuntimeError(f"{self.name} unavailable")
        hit = self.results.get(address)
        if hit is None:
            return None
        latitude, longitude, confidence = hit
        return {"latitude": latitude, "longitude": longitude, "confidence": confidence}


EVENTS_CSV = (
    "title,date,address,seats\n"
    'Open air concert,2024-07-01,"Alexanderplatz 1, Berlin",200\n'
    'Jazz night,2024-07-02,"Marienplatz 1, Munich",80\n'
    "Poetry slam,2024-07-03,Unknown place 99,40\n"
    'Film screening,2024-07-04,"Alexanderplatz 1, Berlin",120\n'
)
