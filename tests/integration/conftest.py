from __future__ import annotations

import json
import os
import socket
import subprocess
import sys
import time
from collections.abc import Iterator
from pathlib import Path
from urllib import error, request

import pytest

from task_marketplace.storage.postgres import PostgresMarketplaceStorage

# Due north of the test customer at 5.6, -0.2: roughly 3.3 km and 8.9 km away.
SEED_PROVIDERS = [
    {
        "provider_id": "pg-p1",
        "coordinates": {"lat": 5.63, "lng": -0.2},
        "active_service_ids": ["plumbing"],
        "rating": 4.6,
        "completion_rate": 0.95,
    },
    {
        "provider_id": "pg-p2",
        "coordinates": {"lat": 5.68, "lng": -0.2},
        "active_service_ids": ["plumbing"],
    },
]


def _pick_free_port() -> int:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            return int(sock.getsockname()[1])
    except PermissionError:
        pytest.skip("Socket operations are blocked in this environment.")


def _wait_for_health(base_url: str, timeout_s: float = 20.0) -> None:
    deadline = time.time() + timeout_s
    while time.time() < deadline:
        try:
            with request.urlopen(f"{base_url}/health", timeout=1.0) as response:
                if response.status == 200:
                    return
        except Exception:  # noqa: BLE001
            time.sleep(0.2)
    raise TimeoutError(f"Server did not become healthy within {timeout_s:.1f}s")


def _start_server(env: dict[str, str], port: int, cwd: Path) -> subprocess.Popen[str]:
    cmd = [
        sys.executable,
        "-m",
        "uvicorn",
        "task_marketplace.api.main:app",
        "--host",
        "127.0.0.1",
        "--port",
        str(port),
    ]
    return subprocess.Popen(  # noqa: S603
        cmd,
        cwd=str(cwd),
        env=env,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        text=True,
    )


@pytest.fixture
def database_url() -> str:
    if os.getenv("RUN_POSTGRES_INTEGRATION_TESTS") != "1":
        pytest.skip(
            "Set RUN_POSTGRES_INTEGRATION_TESTS=1 and MARKETPLACE_DATABASE_URL "
            "to run integration tests against PostgreSQL."
        )
    url = os.getenv("MARKETPLACE_DATABASE_URL")
    if not url:
        pytest.skip("MARKETPLACE_DATABASE_URL is required for integration tests.")
    return url


@pytest.fixture
def pg_storage(database_url: str) -> PostgresMarketplaceStorage:
    storage = PostgresMarketplaceStorage(database_url)
    storage.migrate()
    return storage


@pytest.fixture
def api_base_url(database_url: str, tmp_path: Path) -> Iterator[str]:
    seed_path = tmp_path / "providers.json"
    seed_path.write_text(json.dumps({"providers": SEED_PROVIDERS}), encoding="utf-8")

    port = _pick_free_port()
    base_url = f"http://127.0.0.1:{port}"
    env = os.environ.copy()
    env["MARKETPLACE_STORAGE_BACKEND"] = "postgres"
    env["MARKETPLACE_DATABASE_URL"] = database_url
    env["MARKETPLACE_PROVIDER_SEED_PATH"] = str(seed_path)
    env.pop("MARKETPLACE_PROVIDER_SOURCE_URL", None)

    server = _start_server(env=env, port=port, cwd=Path.cwd())
    try:
        _wait_for_health(base_url)
        yield base_url
    finally:
        server.terminate()
        try:
            server.wait(timeout=5)
        except subprocess.TimeoutExpired:
            server.kill()
            server.wait(timeout=5)


def http_request_json(
    base_url: str,
    method: str,
    path: str,
    payload: dict[str, object] | None = None,
    actor_id: str | None = None,
) -> tuple[int, object]:
    headers = {"Content-Type": "application/json"}
    if actor_id:
        headers["X-Actor-Id"] = actor_id
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    req = request.Request(url=f"{base_url}{path}", method=method, data=data, headers=headers)
    try:
        with request.urlopen(req, timeout=20.0) as response:
            return response.status, json.loads(response.read().decode("utf-8"))
    except error.HTTPError as exc:
        body = exc.read().decode("utf-8")
        return exc.code, json.loads(body)


@pytest.fixture
def call_api():
    return http_request_json
