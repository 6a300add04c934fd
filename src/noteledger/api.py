"""Read-only HTTP surface for session notes and export bundles."""

import json
import logging
import os
import re
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from .config import NoteLedgerConfig
from .engine import NoteEngine

logger = logging.getLogger(__name__)

ROUTE = re.compile(r"^/sessions/(?P<session_id>[^/]+)/(?P<resource>bundle|notes)/?$")


def make_handler(engine: NoteEngine) -> type[BaseHTTPRequestHandler]:
    """Build a request handler class bound to an engine."""

    class NoteLedgerAPIHandler(BaseHTTPRequestHandler):
        def _send_json(self, status: int, body: Any) -> None:
            data = json.dumps(body, sort_keys=True, ensure_ascii=False).encode("utf-8")
            self.send_response(status)
            self.send_header("Content-type", "application/json")
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)

        def do_GET(self):
            path = self.path.split("?", 1)[0]
            match = ROUTE.match(path)
            if match is None:
                self._send_json(404, {"error": f"no route for {path}"})
                return

            session_id = match.group("session_id")
            if session_id not in engine.ledger.sessions():
                self._send_json(404, {"error": f"unknown session {session_id}"})
                return

            if match.group("resource") == "bundle":
                bundle = engine.export(session_id)
                self._send_json(200, bundle.model_dump(mode="json"))
            else:
                notes = engine.get_notes(session_id)
                self._send_json(
                    200,
                    {
                        "session_id": session_id,
                        "notes": [n.model_dump(mode="json") for n in notes],
                    },
                )

        def log_message(self, format: str, *args: Any) -> None:
            logger.info("%s - %s", self.address_string(), format % args)

    return NoteLedgerAPIHandler


def serve(engine: NoteEngine, host: str = "", port: int = 8080) -> ThreadingHTTPServer:
    """Create a server for the engine; the caller runs serve_forever()."""
    return ThreadingHTTPServer((host, port), make_handler(engine))


def main() -> None:
    port = int(os.environ.get("PORT", 8080))
    engine = NoteEngine.from_config(NoteLedgerConfig.from_env())
    server = serve(engine, port=port)
    print(f"noteledger API running on port {port}")
    try:
        server.serve_forever()
    finally:
        engine.close()


if __name__ == "__main__":
    main()
