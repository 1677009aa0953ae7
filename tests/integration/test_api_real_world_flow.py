from __future__ import annotations

import uuid


def test_customer_books_nearest_provider_end_to_end(api_base_url: str, call_api) -> None:
    customer = f"cust-{uuid.uuid4()}"
    payload = {
        "title": "Fix leaking kitchen sink",
        "description": "Water is dripping under the sink cabinet since this morning.",
        "customer_location": {"lat": 5.6, "lng": -0.2},
        "category": "plumbing",
        "max_distance_km": 10.0,
        "estimated_budget": {"min": 120, "max": 200, "currency": "GHS"},
    }
    status, task = call_api(api_base_url, "POST", "/tasks", payload, customer)
    assert status == 201
    assert task["status"] == "MATCHED"
    assert [item["provider_id"] for item in task["matched_providers"]] == ["pg-p1", "pg-p2"]
    task_id = task["task_id"]

    status, task = call_api(
        api_base_url,
        "POST",
        f"/tasks/{task_id}/request-provider",
        {"provider_id": "pg-p1"},
        customer,
    )
    assert status == 200
    assert task["status"] == "REQUESTED"

    status, body = call_api(
        api_base_url, "POST", f"/tasks/{task_id}/respond", {"action": "accept"}, "pg-p1"
    )
    assert status == 200
    booking_id = body["booking"]["booking_id"]

    status, body = call_api(
        api_base_url, "POST", f"/tasks/{task_id}/respond", {"action": "accept"}, "pg-p1"
    )
    assert status == 409
    assert body["error"]["code"] == "TASK_ALREADY_CONVERTED"

    for path, request_body in (
        (f"/bookings/{booking_id}/start", None),
        (f"/bookings/{booking_id}/complete", {"final_price": 150}),
    ):
        status, _ = call_api(api_base_url, "POST", path, request_body, "pg-p1")
        assert status == 200

    status, combined = call_api(api_base_url, "GET", f"/tasks/{task_id}/with-booking")
    assert status == 200
    assert combined["task"]["status"] == "CONVERTED"
    assert combined["booking"]["status"] == "COMPLETED"
    assert combined["booking"]["final_price"] == 150


def test_unknown_task_returns_404(api_base_url: str, call_api) -> None:
    status, body = call_api(api_base_url, "GET", "/tasks/does-not-exist")

    assert status == 404
    assert body["error"]["code"] == "TASK_NOT_FOUND"
