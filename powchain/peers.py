from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from urllib.parse import urlparse


logger = logging.getLogger(__name__)


def normalize_peer(peer: str) -> str:
    raw = peer.strip()
    if not raw:
        raise ValueError("Peer URL must not be empty")
    if "://" not in raw:
        raw = f"http://{raw}"
    parsed = urlparse(raw)
    if parsed.scheme not in {"http", "https"}:
        raise ValueError("Peer URL scheme must be http or https")
    if not parsed.netloc:
        raise ValueError("Peer URL must include host:port")
    return f"{parsed.scheme}://{parsed.netloc}"


class PeerDirectory:
    def __init__(self, path: str | Path | None = None, self_url: str = "", max_peers: int = 128):
        self.path = Path(path) if path is not None else None
        self.self_url = normalize_peer(self_url) if self_url else ""
        self.max_peers = max(1, int(max_peers))
        self._lock = threading.Lock()
        self._peers: set[str] = set()

    def load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read peer list %s: %s", self.path, exc)
            return
        if not isinstance(data, list):
            return
        with self._lock:
            for item in data:
                if not isinstance(item, str):
                    continue
                try:
                    peer_url = normalize_peer(item)
                except ValueError:
                    continue
                if peer_url != self.self_url:
                    self._peers.add(peer_url)

    def save(self) -> None:
        if self.path is None:
            return
        with self._lock:
            rows = sorted(self._peers)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as handle:
            json.dump(rows, handle, indent=2)

    def get_peers(self) -> list[str]:
        with self._lock:
            return sorted(self._peers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)

    def add(self, peer: str, persist: bool = True) -> tuple[bool, str, str]:
        peer_url = normalize_peer(peer)
        with self._lock:
            if peer_url == self.self_url:
                return False, "self-peer-not-allowed", peer_url
            if peer_url in self._peers:
                return False, "known-peer", peer_url
            if len(self._peers) >= self.max_peers:
                return False, "max-peers-reached", peer_url
            self._peers.add(peer_url)
        logger.info("Added peer %s", peer_url)
        if persist:
            self.save()
        return True, "added", peer_url

    def remove(self, peer: str, persist: bool = True) -> bool:
        peer_url = normalize_peer(peer)
        with self._lock:
            if peer_url not in self._peers:
                return False
            self._peers.discard(peer_url)
        logger.info("Removed peer %s", peer_url)
        if persist:
            self.save()
        return True
