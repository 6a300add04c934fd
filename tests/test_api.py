"""Tests for the read-only HTTP surface."""

import threading

import pytest
import requests

from noteledger.api import serve


@pytest.fixture
def api_url(make_engine):
    engine = make_engine()
    engine.ingest_transcript("s1", 10.0, "turn left here", 0.9)
    engine.ingest_transcript("s1", 100.0, "music is too loud", 0.9)

    server = serve(engine, "127.0.0.1", 0)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address[:2]
    yield f"http://{host}:{port}", engine
    server.shutdown()
    server.server_close()


def test_notes_endpoint(api_url):
    url, engine = api_url

    response = requests.get(f"{url}/sessions/s1/notes", timeout=5)

    assert response.status_code == 200
    body = response.json()
    assert body["session_id"] == "s1"
    assert [n["note_id"] for n in body["notes"]] == [n.note_id for n in engine.get_notes("s1")]


def test_bundle_endpoint_matches_export(api_url):
    url, engine = api_url

    response = requests.get(f"{url}/sessions/s1/bundle", timeout=5)

    assert response.status_code == 200
    assert response.json()["bundle_hash"] == engine.export("s1").bundle_hash


def test_unknown_session_and_route(api_url):
    url, _ = api_url

    assert requests.get(f"{url}/sessions/nope/notes", timeout=5).status_code == 404
    assert requests.get(f"{url}/health/deep", timeout=5).status_code == 404
