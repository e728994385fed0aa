"""
Shared fixtures.

The services talk to MongoDB through motor and to Redis through
redis.asyncio. Tests swap both clients for in-memory doubles that follow
the same call shapes, so atomic operations (find_one_and_update,
SET NX) keep their single-step semantics.
"""

import asyncio
import copy
import math
import uuid
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from geopy.distance import great_circle

from carpool import database
from carpool.models.ride import Ride, RideStatus
from carpool.models.ride_request import Destination, Gender, RideRequest, RideRequestStatus
from carpool.services.routing_service import ProviderUnavailable, RouteResult, TripLeg, TripResult
from carpool.utils.timezone_utils import utc_now


# =============================================================================
# MongoDB double
# =============================================================================

_MISSING = object()


def _get_field(doc, key):
    value = doc
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _compare(value, op, operand):
    if op == "$exists":
        return (value is not _MISSING) == bool(operand)
    if value is _MISSING:
        value = None
    if op == "$eq":
        return value == operand
    if op == "$ne":
        return value != operand
    if op == "$in":
        return value in operand
    if op == "$nin":
        return value not in operand
    if value is None:
        return False
    if op == "$lt":
        return value < operand
    if op == "$lte":
        return value <= operand
    if op == "$gt":
        return value > operand
    if op == "$gte":
        return value >= operand
    raise NotImplementedError(op)


def _matches(doc, query):
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in condition):
                return False
            continue
        if key == "$and":
            if not all(_matches(doc, sub) for sub in condition):
                return False
            continue

        value = _get_field(doc, key)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            if not all(_compare(value, op, operand) for op, operand in condition.items()):
                return False
        else:
            if (None if value is _MISSING else value) != condition:
                return False
    return True


def _apply_update(doc, update):
    for op, fields in update.items():
        for key, value in fields.items():
            if op == "$set":
                doc[key] = copy.deepcopy(value)
            elif op == "$unset":
                doc.pop(key, None)
            elif op == "$inc":
                doc[key] = doc.get(key, 0) + value
            elif op == "$min":
                if key not in doc or value < doc[key]:
                    doc[key] = value
            elif op == "$max":
                if key not in doc or value > doc[key]:
                    doc[key] = value
            else:
                raise NotImplementedError(op)


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs.sort(key=lambda d: d.get(key), reverse=direction == -1)
        return self

    def limit(self, n):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        return self._docs if length is None else self._docs[:length]

    def __aiter__(self):
        self._iter = iter(self._docs)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    """Subset of AsyncIOMotorCollection. No method yields, so each call is atomic."""

    def __init__(self, name):
        self.name = name
        self.docs = []

    def seed(self, *docs):
        for doc in docs:
            doc = copy.deepcopy(doc)
            doc.setdefault("_id", uuid.uuid4().hex)
            self.docs.append(doc)

    def all(self, query=None):
        return [copy.deepcopy(d) for d in self.docs if _matches(d, query)]

    async def create_index(self, *args, **kwargs):
        return "index"

    async def insert_one(self, doc):
        stored = copy.deepcopy(doc)
        stored.setdefault("_id", uuid.uuid4().hex)
        self.docs.append(stored)
        return SimpleNamespace(inserted_id=stored["_id"])

    async def find_one(self, query=None, projection=None):
        for doc in self.docs:
            if _matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query=None, projection=None):
        return FakeCursor([copy.deepcopy(d) for d in self.docs if _matches(d, query)])

    async def count_documents(self, query):
        return sum(1 for d in self.docs if _matches(d, query))

    async def update_one(self, query, update, upsert=False):
        for doc in self.docs:
            if _matches(doc, query):
                before = copy.deepcopy(doc)
                _apply_update(doc, update)
                return SimpleNamespace(
                    matched_count=1, modified_count=int(before != doc), upserted_id=None
                )
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def update_many(self, query, update):
        matched = modified = 0
        for doc in self.docs:
            if _matches(doc, query):
                matched += 1
                before = copy.deepcopy(doc)
                _apply_update(doc, update)
                modified += int(before != doc)
        return SimpleNamespace(matched_count=matched, modified_count=modified)

    async def find_one_and_update(self, query, update, return_document=False, **kwargs):
        for doc in self.docs:
            if _matches(doc, query):
                before = copy.deepcopy(doc)
                _apply_update(doc, update)
                # pymongo.ReturnDocument.AFTER is True
                return copy.deepcopy(doc) if return_document else before
        return None

    async def delete_one(self, query):
        for i, doc in enumerate(self.docs):
            if _matches(doc, query):
                del self.docs[i]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]


# =============================================================================
# Redis double
# =============================================================================

class FakeRedis:
    def __init__(self):
        self.store = {}

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def get(self, key):
        return self.store.get(key)

    async def delete(self, key):
        return int(self.store.pop(key, None) is not None)


# =============================================================================
# Routing double
# =============================================================================

class StubRoutingService:
    """
    Road distance is the great-circle distance along the given points.

    Every call yields to the event loop once, like a real network call,
    so concurrent attempts interleave at the same points they would in
    production.
    """

    def __init__(self):
        self.fail_route = False
        self.fail_trip = False
        self.route_calls = 0
        self.trip_calls = 0

    @staticmethod
    def _length(points):
        return sum(great_circle(a, b).meters for a, b in zip(points, points[1:]))

    async def route(self, a, b):
        return await self.route_through([a, b])

    async def route_through(self, points):
        await asyncio.sleep(0)
        self.route_calls += 1
        if self.fail_route:
            raise ProviderUnavailable("stub route failure")
        distance = self._length(points)
        return RouteResult(distance_meters=distance, duration_seconds=distance / 10, polyline="route")

    async def trip(self, origin, destinations):
        await asyncio.sleep(0)
        self.trip_calls += 1
        if self.fail_trip:
            raise ProviderUnavailable("stub trip failure")

        # Nearest neighbour from the origin
        remaining = list(range(len(destinations)))
        current = origin
        order, legs = [], []
        while remaining:
            nearest = min(remaining, key=lambda i: great_circle(current, destinations[i]).meters)
            distance = great_circle(current, destinations[nearest]).meters
            legs.append(TripLeg(index=nearest, distance_meters=distance, duration_seconds=distance / 10))
            order.append(nearest)
            remaining.remove(nearest)
            current = destinations[nearest]

        total = sum(leg.distance_meters for leg in legs)
        return TripResult(
            order=order,
            legs=legs,
            total_distance_meters=total,
            total_duration_seconds=total / 10,
            polyline="trip",
        )


# =============================================================================
# Seed data
# =============================================================================

# Event in central Paris; destinations are placed due north so great-circle
# distances add up exactly along the meridian.
EVENT_LOCATION = (48.8566, 2.3522)
KM_IN_LAT_DEGREES = 1 / 111.195


def north_of_event(km):
    return (EVENT_LOCATION[0] + km * KM_IN_LAT_DEGREES, EVENT_LOCATION[1])


class Seeder:
    """Inserts consistent rides and requests into the fake database."""

    def __init__(self, db):
        self.db = db
        self.now = utc_now()
        self.event_id = "evt-1"
        self._clock = 0

    def event(self, **overrides):
        doc = {
            "event_id": self.event_id,
            "name": "Concert",
            "location": "Stade de France",
            "latitude": EVENT_LOCATION[0],
            "longitude": EVENT_LOCATION[1],
            "start_date": self.now - timedelta(hours=2),
            "end_date": self.now + timedelta(hours=2),
        }
        doc.update(overrides)
        self.db.events.seed(doc)
        return doc

    def ticket(self, user_id, status="valid"):
        self.db.tickets.seed({"user_id": user_id, "event_id": self.event_id, "status": status})

    def user(self, user_id, gender=None):
        self.db.users.seed({"user_id": user_id, "gender": gender})

    def ride(self, count=1, status=RideStatus.MATCHING, departure=None, **overrides):
        ride = Ride(
            ride_id=overrides.pop("ride_id", f"ride-{uuid.uuid4().hex[:8]}"),
            event_id=overrides.pop("event_id", self.event_id),
            departure_time=departure or self.now + timedelta(hours=1),
            departure_address="Stade de France",
            departure_latitude=EVENT_LOCATION[0],
            departure_longitude=EVENT_LOCATION[1],
            current_passenger_count=count,
            status=status,
            **overrides,
        )
        self.db.rides.seed(ride.model_dump())
        return ride

    def request(
        self,
        ride_id,
        km_north=10.0,
        km_east=0.0,
        departure=None,
        status=RideRequestStatus.ACCEPTED,
        gender=Gender.FEMALE,
        female_only=False,
        is_initiator=False,
        user_id=None,
        **overrides,
    ):
        # Strictly increasing creation times keep tie-breaks deterministic
        self._clock += 1
        lat, lng = north_of_event(km_north)
        lng += km_east / (111.195 * math.cos(math.radians(lat)))
        request = RideRequest(
            request_id=overrides.pop("request_id", f"req-{uuid.uuid4().hex[:8]}"),
            ride_id=ride_id,
            user_id=user_id or f"user-{uuid.uuid4().hex[:8]}",
            event_id=overrides.pop("event_id", self.event_id),
            max_departure_time=departure or self.now + timedelta(hours=1),
            destination=Destination(
                address=f"{km_north} km north", city="Paris", postcode="75000",
                latitude=lat, longitude=lng,
            ),
            female_only=female_only,
            gender=gender,
            is_initiator=is_initiator,
            status=status,
            created_at=self.now - timedelta(hours=1) + timedelta(seconds=self._clock),
            **overrides,
        )
        self.db.ride_requests.seed(request.model_dump())
        return request

    def solo(self, km_north=10.0, departure=None, status=RideRequestStatus.ACCEPTED, **kwargs):
        """A ride with its single initiator request."""
        ride = self.ride(count=1, departure=departure)
        request = self.request(
            ride.ride_id, km_north=km_north, departure=departure,
            status=status, is_initiator=True, **kwargs,
        )
        return ride, request

    def ride_doc(self, ride_id):
        return self.db.rides.all({"ride_id": ride_id})[0]

    def request_doc(self, request_id):
        return self.db.ride_requests.all({"request_id": request_id})[0]

    def active_count(self, ride_id):
        return len(self.db.ride_requests.all(
            {"ride_id": ride_id, "status": {"$in": ["pending", "accepted"]}}
        ))


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def fake_db():
    db = FakeDatabase()
    with patch.object(database.mongo, "db", db):
        yield db


@pytest.fixture
def fake_redis():
    client = FakeRedis()
    with patch.object(database.redis_client, "client", client):
        yield client


@pytest.fixture
def router():
    return StubRoutingService()


@pytest.fixture
def seed(fake_db, fake_redis):
    seeder = Seeder(fake_db)
    seeder.event()
    return seeder
