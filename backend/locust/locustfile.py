"""
Locust Load Test Suite

Run scenarios:
  locust -f locustfile.py --tags concurrency  # Test overbooking
  locust -f locustfile.py --tags throughput   # Test availability cache
  locust -f locustfile.py --tags edge         # Test bad input
  locust -f locustfile.py                     # All tests

Contention uses the admin booking endpoint so no payment processor is needed.
"""

import random
from datetime import datetime, timedelta, timezone

from locust import HttpUser, between, events, tag, task

# Shared state
SETUP = {}
ADMIN_HEADERS = {"X-Admin-Id": "locust"}
SLOT_TIME = "09:00"


def slot_date():
    return (datetime.now(timezone.utc).date() + timedelta(days=14)).isoformat()


def random_customer():
    n = random.randint(10000, 99999)
    return {"email": f"load_{n}@test.com", "first_name": "Load", "last_name": f"User{n}"}


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    print("\n" + "=" * 60)
    print("SETUP: tour, schedule and ticket are created by the first user")
    print("=" * 60)


def ensure_tour(client):
    """Create one 10-seat daily tour with a single priced ticket, once per run."""
    if SETUP:
        return SETUP
    resp = client.post(
        "/api/v1/admin/tours",
        json={"name": "Concurrency Test Tour", "capacity": 10},
        headers=ADMIN_HEADERS,
    )
    if resp.status_code != 201:
        return SETUP
    tour_id = resp.json()["id"]
    client.put(
        f"/api/v1/admin/tours/{tour_id}/schedule",
        json={"days_of_week": [0, 1, 2, 3, 4, 5, 6], "times": [SLOT_TIME]},
        headers=ADMIN_HEADERS,
    )
    ticket = client.post("/api/v1/admin/tickets", json={"name": "Adult"}, headers=ADMIN_HEADERS).json()
    client.put(
        f"/api/v1/admin/tours/{tour_id}/pricing",
        json=[{"ticket_id": ticket["id"], "price": "40.00"}],
        headers=ADMIN_HEADERS,
    )
    SETUP.update(tour_id=tour_id, ticket_id=ticket["id"])
    print(f"\n✓ Created tour {tour_id} with 10 seats per departure\n")
    return SETUP


class ConcurrencyUser(HttpUser):
    """
    TEST 1: Concurrency - 100 users → 10 seats on one departure

    Run: locust -f locustfile.py --tags concurrency -u 100 -r 50 --run-time 30s

    After test, verify:
      SELECT booked_seats, capacity FROM tour_instances WHERE tour_id = X;
    booked_seats should be ≤ capacity and equal the sum of counted bookings
    """
    wait_time = between(0, 0.1)

    def on_start(self):
        ensure_tour(self.client)

    @tag("concurrency")
    @task
    def book_limited_seats(self):
        """All users fight for the same 10 seats."""
        if not SETUP:
            return

        with self.client.post(
            "/api/v1/admin/bookings",
            json={
                "tour_id": SETUP["tour_id"],
                "date": slot_date(),
                "time": SLOT_TIME,
                "seats": 1,
                "customer": random_customer(),
            },
            headers=ADMIN_HEADERS,
            catch_response=True,
        ) as resp:
            if resp.status_code == 201:
                resp.success()
            elif resp.status_code == 409:
                resp.success()  # Expected: sold out
            else:
                resp.failure(f"Unexpected: {resp.status_code}")


class ThroughputUser(HttpUser):
    """
    TEST 2: Throughput - Availability cache effectiveness

    Run twice:
      1. With Redis: locust -f locustfile.py --tags throughput -u 100 -r 20 --run-time 60s
      2. Without Redis: REDIS_ENABLED=false, run again

    Compare:
      - Avg response time
      - Requests/sec
      - P95/P99 latency
    """
    wait_time = between(0.1, 0.5)

    def on_start(self):
        ensure_tour(self.client)

    @tag("throughput", "read")
    @task(10)
    def availability_cached(self):
        """Hammer the cached endpoint."""
        if not SETUP:
            return
        start = datetime.now(timezone.utc).date()
        end = start + timedelta(days=random.choice([7, 14, 30]))
        self.client.get(
            f"/api/v1/tours/{SETUP['tour_id']}/availability",
            params={"start_date": start.isoformat(), "end_date": end.isoformat()},
            name="/api/v1/tours/{id}/availability [cached]",
        )

    @tag("throughput", "read")
    @task(3)
    def slot_pricing(self):
        if not SETUP:
            return
        self.client.get(
            f"/api/v1/tours/{SETUP['tour_id']}/pricing",
            params={"date": slot_date(), "time": SLOT_TIME},
            name="/api/v1/tours/{id}/pricing",
        )

    @tag("throughput")
    @task(1)
    def health_check(self):
        """Monitor system health."""
        self.client.get("/health")


class EdgeCaseUser(HttpUser):
    """
    TEST 3: Edge cases - Bad input handling

    Run: locust -f locustfile.py --tags edge -u 20 -r 5 --run-time 30s

    System should NOT crash, return proper error codes.
    """
    wait_time = between(0.5, 1.5)

    def _expect(self, resp, allowed):
        if resp.status_code in allowed:
            resp.success()
        else:
            resp.failure(f"Expected {allowed}, got {resp.status_code}")

    def _book(self, payload):
        return self.client.post(
            "/api/v1/admin/bookings", json=payload, headers=ADMIN_HEADERS, catch_response=True
        )

    @tag("edge")
    @task
    def unknown_tour(self):
        """Book a tour that does not exist."""
        with self._book({
            "tour_id": 999999, "date": slot_date(), "time": SLOT_TIME, "seats": 1,
            "customer": random_customer(),
        }) as resp:
            self._expect(resp, [404, 400])

    @tag("edge")
    @task
    def off_schedule_time(self):
        """Book a time the schedule never runs."""
        if not SETUP:
            return
        with self._book({
            "tour_id": SETUP["tour_id"], "date": slot_date(), "time": "03:17", "seats": 1,
            "customer": random_customer(),
        }) as resp:
            self._expect(resp, [400])

    @tag("edge")
    @task
    def zero_seats(self):
        with self._book({
            "tour_id": 1, "date": slot_date(), "time": SLOT_TIME, "seats": 0,
            "customer": random_customer(),
        }) as resp:
            self._expect(resp, [400, 422])

    @tag("edge")
    @task
    def huge_seats(self):
        """Try to book an absurd number of seats."""
        with self._book({
            "tour_id": 1, "date": slot_date(), "time": SLOT_TIME, "seats": 999999,
            "customer": random_customer(),
        }) as resp:
            self._expect(resp, [400, 409, 422])

    @tag("edge")
    @task
    def malformed_json(self):
        """Send garbage data."""
        with self.client.post(
            "/api/v1/bookings/", data="not json at all", catch_response=True
        ) as resp:
            self._expect(resp, [400, 422, 429])

    @tag("edge")
    @task
    def unsigned_webhook(self):
        with self.client.post(
            "/api/v1/webhooks/stripe", data="{}", catch_response=True
        ) as resp:
            self._expect(resp, [400])


class RealisticUser(HttpUser):
    """
    TEST 4: Realistic mixed workload

    Run: locust -f locustfile.py -u 200 -r 20 --run-time 120s

    Simulates real traffic:
      - Mostly browsing availability
      - Some price lookups
      - Occasional phone bookings
    """
    wait_time = between(1, 3)

    def on_start(self):
        ensure_tour(self.client)

    @task(50)
    def browse_availability(self):
        if not SETUP:
            return
        start = datetime.now(timezone.utc).date() + timedelta(days=random.randint(0, 60))
        self.client.get(
            f"/api/v1/tours/{SETUP['tour_id']}/availability",
            params={
                "start_date": start.isoformat(),
                "end_date": (start + timedelta(days=7)).isoformat(),
                "seats": random.randint(1, 3),
            },
            name="/api/v1/tours/{id}/availability",
        )

    @task(20)
    def view_pricing(self):
        if not SETUP:
            return
        self.client.get(
            f"/api/v1/tours/{SETUP['tour_id']}/pricing",
            params={"date": slot_date(), "time": SLOT_TIME},
            name="/api/v1/tours/{id}/pricing",
        )

    @task(5)
    def phone_booking(self):
        """Occasional admin booking on a random departure."""
        if not SETUP:
            return
        day = datetime.now(timezone.utc).date() + timedelta(days=random.randint(1, 60))
        self.client.post(
            "/api/v1/admin/bookings",
            json={
                "tour_id": SETUP["tour_id"],
                "date": day.isoformat(),
                "time": SLOT_TIME,
                "seats": random.randint(1, 3),
                "customer": random_customer(),
                "tickets": None,
            },
            headers=ADMIN_HEADERS,
            name="/api/v1/admin/bookings",
        )
