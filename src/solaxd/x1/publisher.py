from __future__ import annotations

import json
import logging
import socket
from typing import Any, Callable, Dict, Optional

from .processing import AveragedSnapshot

logger = logging.getLogger(__name__)


def snapshot_document(
    address: int, online: bool, snapshot: AveragedSnapshot
) -> Dict[str, Any]:
    """Status document served to the monitoring front end."""
    return {
        "inverter": {
            "address": address,
            "online": int(online),
            "quality_of_service": round(snapshot.quality_of_service, 2),
            "live_data": {
                "temperature": int(round(snapshot.temperature)),
                "dc1_voltage": round(snapshot.dc1_voltage, 1),
                "dc1_current": round(snapshot.dc1_current, 1),
                "dc2_voltage": round(snapshot.dc2_voltage, 1),
                "dc2_current": round(snapshot.dc2_current, 1),
                "ac_voltage": round(snapshot.ac_voltage, 1),
                "ac_current": round(snapshot.ac_current, 1),
                "frequency": round(snapshot.frequency, 2),
                "power": int(round(snapshot.power)),
                "energy_today": round(snapshot.energy_today, 1),
                "energy_total": round(snapshot.energy_total, 1),
                "runtime_total": int(round(snapshot.runtime_total)),
                "status": int(snapshot.status),
                "error_bits": int(snapshot.error_bits),
            },
        }
    }


def render_response(document: Dict[str, Any]) -> bytes:
    body = json.dumps(document, indent=2).replace("\n", "\r\n") + "\r\n"
    head = (
        "HTTP/1.0 200 OK\r\n"
        "Connection: close\r\n"
        "Content-Type: application/json\r\n"
        f"Content-Length: {len(body.encode('utf-8'))}\r\n"
        "\r\n"
    )
    return (head + body).encode("utf-8")


class StatusServer:
    """
    Minimal HTTP endpoint polled from the main loop. ``poll`` never blocks: it
    answers at most the connections already waiting and returns.
    """

    def __init__(self, host: str, port: int, backlog: int = 10):
        self.host = host
        self.port = port
        self.backlog = backlog
        self._sock: Optional[socket.socket] = None

    def open(self) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
            sock.listen(self.backlog)
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        self._sock = sock
        self.port = sock.getsockname()[1]
        logger.info("HTTP server at port '%d' created successfully", self.port)

    def poll(self, document: Callable[[], Dict[str, Any]]) -> int:
        """Answer at most ``backlog`` waiting clients without blocking on any of them."""
        if self._sock is None:
            return 0
        served = 0
        for _ in range(self.backlog):
            try:
                client, peer = self._sock.accept()
            except BlockingIOError:
                break
            logger.debug("HTTP: got a connection from %s", peer[0])
            with client:
                client.setblocking(False)
                try:
                    self._discard_request(client)
                    client.sendall(render_response(document()))
                except OSError as exc:
                    logger.debug("HTTP: client %s dropped: %s", peer[0], exc)
                    continue
            served += 1
        return served

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    @staticmethod
    def _discard_request(client: socket.socket) -> None:
        # The request is never parsed; read what has already arrived.
        try:
            client.recv(4096)
        except BlockingIOError:
            pass
