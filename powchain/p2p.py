from __future__ import annotations

import json
import logging
import socket
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlparse
from urllib.request import Request, urlopen

from .chain import Ledger, MiningBusyError, PersistenceError
from .config import CONFIG, NodeConfig
from .consensus import Resolver
from .gossip import Gossip
from .models import Block, parse_block_key
from .peers import PeerDirectory, normalize_peer
from .pow_hash import MiningInterruptedError, check_difficulty
from .storage import JsonChainStore
from .validation import is_valid_chain


logger = logging.getLogger(__name__)


class NetworkError(Exception):
    pass


class BadRequest(Exception):
    pass


def _join_url(base_url: str, path: str) -> str:
    base = normalize_peer(base_url).rstrip("/")
    return f"{base}{path if path.startswith('/') else '/' + path}"


def _request_json(
    url: str,
    method: str = "GET",
    payload: dict[str, Any] | None = None,
    timeout: float | None = 5.0,
) -> dict[str, Any]:
    data = None
    headers = {"Accept": "application/json"}
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
        headers["Content-Type"] = "application/json"

    req = Request(url=url, data=data, method=method.upper(), headers=headers)
    request_timeout = None if timeout is None else float(timeout)

    try:
        with urlopen(req, timeout=request_timeout) as response:
            raw = response.read()
            if not raw:
                return {}
            decoded = json.loads(raw.decode("utf-8"))
            if not isinstance(decoded, dict):
                raise NetworkError(f"Expected JSON object response from {url}")
            return decoded
    except HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace")
        raise NetworkError(f"HTTP {exc.code} calling {url}: {body}") from exc
    except URLError as exc:
        if isinstance(getattr(exc, "reason", None), (TimeoutError, socket.timeout)):
            raise NetworkError(f"Timeout calling {url}") from exc
        raise NetworkError(f"Network error calling {url}: {exc}") from exc
    except (TimeoutError, socket.timeout) as exc:
        raise NetworkError(f"Timeout calling {url}") from exc
    except (ConnectionError, OSError) as exc:
        raise NetworkError(f"Network error calling {url}: {exc}") from exc
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise NetworkError(f"Invalid JSON response from {url}") from exc


def fetch_chain(peer_url: str, timeout: float = 5.0) -> list[dict[str, Any]]:
    data = _request_json(_join_url(peer_url, "/api/blocks"), method="GET", timeout=timeout)
    chain = data.get("chain")
    if not isinstance(chain, list):
        raise NetworkError(f"Peer {peer_url} returned no chain array")
    return chain


def push_block(peer_url: str, block: Block, timeout: float = 5.0) -> dict[str, Any]:
    return _request_json(
        _join_url(peer_url, "/api/receive-block"),
        method="POST",
        payload=block.to_dict(),
        timeout=timeout,
    )


def api_health(node_url: str, timeout: float = 5.0) -> dict[str, Any]:
    return _request_json(_join_url(node_url, "/api/health"), method="GET", timeout=timeout)


def api_blocks(node_url: str, timeout: float = 5.0) -> dict[str, Any]:
    return _request_json(_join_url(node_url, "/api/blocks"), method="GET", timeout=timeout)


def api_block(node_url: str, key: str, timeout: float = 5.0) -> dict[str, Any]:
    return _request_json(_join_url(node_url, f"/api/blocks/{quote(str(key), safe='')}"), method="GET", timeout=timeout)


def api_explorer(node_url: str, timeout: float = 5.0) -> dict[str, Any]:
    return _request_json(_join_url(node_url, "/api/explorer"), method="GET", timeout=timeout)


def api_append(node_url: str, data: Any, timeout: float | None = None) -> dict[str, Any]:
    return _request_json(_join_url(node_url, "/api/blocks"), method="POST", payload={"data": data}, timeout=timeout)


def api_mine(node_url: str, data: Any, difficulty: int | None = None, timeout: float | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"data": data}
    if difficulty is not None:
        payload["difficulty"] = int(difficulty)
    return _request_json(_join_url(node_url, "/api/mine"), method="POST", payload=payload, timeout=timeout)


def api_resolve(node_url: str, timeout: float = 30.0) -> dict[str, Any]:
    return _request_json(_join_url(node_url, "/api/resolve"), method="POST", payload={}, timeout=timeout)


def api_peers(node_url: str, timeout: float = 5.0) -> dict[str, Any]:
    return _request_json(_join_url(node_url, "/api/peers"), method="GET", timeout=timeout)


def add_peer_to_node(node_url: str, peers: list[str], timeout: float = 5.0) -> dict[str, Any]:
    return _request_json(
        _join_url(node_url, "/api/peers"),
        method="POST",
        payload={"peers": list(peers)},
        timeout=timeout,
    )


def api_set_difficulty(node_url: str, difficulty: int, timeout: float = 5.0) -> dict[str, Any]:
    return _request_json(
        _join_url(node_url, "/api/config/difficulty"),
        method="POST",
        payload={"difficulty": int(difficulty)},
        timeout=timeout,
    )


class Node:
    def __init__(
        self,
        data_dir: str | Path,
        host: str = "127.0.0.1",
        port: int = 4001,
        advertise_host: str | None = None,
        peers: list[str] | None = None,
        config: NodeConfig = CONFIG,
        node_name: str | None = None,
    ) -> None:
        self.config = config
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.host = host
        self.stop_event = threading.Event()

        self.ledger = Ledger(JsonChainStore(self.data_dir / "chain.json"), config=config)

        self.server = ThreadingHTTPServer((self.host, int(port)), self._build_handler())
        self.server.daemon_threads = True
        self.server.timeout = 1.0
        self.port = int(self.server.server_address[1])
        self.node_name = node_name or f"node-{self.port}"

        adv_host = advertise_host.strip() if advertise_host else host
        self.node_url = normalize_peer(f"http://{adv_host}:{self.port}")

        self.peers = PeerDirectory(
            self.data_dir / "peers.json",
            self_url=self.node_url,
            max_peers=config.max_peer_count,
        )
        self.peers.load()
        for peer in peers or []:
            self.peers.add(peer, persist=False)
        self.peers.save()

        self.resolver = Resolver(
            self.ledger,
            fetch_chain,
            workers=config.resolve_workers,
            timeout=config.request_timeout,
        )
        self.gossip = Gossip(
            self.ledger,
            push_block,
            workers=config.broadcast_workers,
            timeout=config.request_timeout,
        )
        # Proof-of-work runs here, never on a request-serving thread.
        self._miner = ThreadPoolExecutor(max_workers=1, thread_name_prefix="powchain-miner")
        self._mine_state_lock = threading.Lock()
        self._mine_future: Future | None = None
        self._serve_thread: threading.Thread | None = None

    def _build_handler(self):
        node = self

        class Handler(BaseHTTPRequestHandler):
            protocol_version = "HTTP/1.1"

            def _send_json(self, status: int, payload: Any) -> None:
                raw = json.dumps(payload).encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "application/json; charset=utf-8")
                self.send_header("Content-Length", str(len(raw)))
                self.end_headers()
                self.wfile.write(raw)

            def _read_json(self) -> dict[str, Any]:
                length_text = self.headers.get("Content-Length", "0").strip()
                try:
                    length = int(length_text)
                except ValueError:
                    raise BadRequest("Invalid Content-Length header")
                if length <= 0:
                    return {}
                if length > node.config.max_request_body_bytes:
                    raise BadRequest(f"Request body too large (max {node.config.max_request_body_bytes} bytes)")
                body = self.rfile.read(length)
                try:
                    decoded = json.loads(body.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                    raise BadRequest("Request body is not valid JSON") from exc
                if not isinstance(decoded, dict):
                    raise BadRequest("Request body must be a JSON object")
                return decoded

            def _dispatch(self, method: str) -> None:
                path = urlparse(self.path).path.rstrip("/") or "/"
                try:
                    payload = self._read_json() if method in {"POST", "DELETE"} else {}
                    status, body = node.handle(method, path, payload)
                    self._send_json(status, body)
                except BadRequest as exc:
                    self._send_json(400, {"ok": False, "error": str(exc)})
                except MiningBusyError as exc:
                    self._send_json(409, {"ok": False, "error": str(exc), "reason": "mining-in-progress"})
                except MiningInterruptedError as exc:
                    self._send_json(503, {"ok": False, "error": str(exc)})
                except PersistenceError as exc:
                    logger.error("Persistence failure serving %s %s: %s", method, path, exc)
                    self._send_json(500, {"ok": False, "error": f"Persistence error: {exc}"})
                except Exception as exc:  # pragma: no cover
                    logger.exception("Unhandled error serving %s %s", method, path)
                    self._send_json(500, {"ok": False, "error": f"Server error: {exc}"})

            def do_GET(self) -> None:
                self._dispatch("GET")

            def do_POST(self) -> None:
                self._dispatch("POST")

            def do_DELETE(self) -> None:
                self._dispatch("DELETE")

            def log_message(self, fmt: str, *args) -> None:
                logger.debug("%s - %s", self.address_string(), fmt % args)

        return Handler

    def handle(self, method: str, path: str, payload: dict[str, Any]) -> tuple[int, Any]:
        if method == "GET":
            if path == "/api/health":
                return 200, self.health_payload()
            if path == "/api/blocks":
                return 200, self.chain_payload()
            if path == "/api/explorer":
                return 200, {"explorer": self.ledger.explorer_rows()}
            if path.startswith("/api/blocks/"):
                return self.block_payload(path[len("/api/blocks/"):])
            if path == "/api/peers":
                return 200, {"peers": self.peers.get_peers()}

        if method == "POST":
            if path == "/api/blocks":
                block = self.mine(payload.get("data", payload.get("payload")))
                return 201, block.to_dict()
            if path == "/api/mine":
                difficulty = payload.get("difficulty")
                block = self.mine(payload.get("data", payload.get("payload")), difficulty=difficulty)
                return 201, block.to_dict()
            if path == "/api/receive-block":
                return self.receive_block(payload.get("block", payload))
            if path == "/api/peers":
                return 200, self.add_peers(payload.get("peers"))
            if path == "/api/resolve":
                return 200, {"ok": True, **self.resolve()}
            if path == "/api/config/difficulty":
                return 200, self.set_default_difficulty(payload.get("difficulty"))

        if method == "DELETE" and path == "/api/peers":
            return 200, self.remove_peers(payload.get("peers"))

        return 404, {"ok": False, "error": "Not found"}

    def health_payload(self) -> dict[str, Any]:
        return {
            "ok": True,
            "node": self.node_name,
            "url": self.node_url,
            "height": self.ledger.height,
            "peers": self.peers.get_peers(),
            "mining": self.ledger.mining,
        }

    def chain_payload(self) -> dict[str, Any]:
        blocks = self.ledger.blocks()
        return {
            "valid": is_valid_chain(blocks),
            "length": len(blocks),
            "chain": [block.to_dict() for block in blocks],
        }

    def block_payload(self, raw_key: str) -> tuple[int, dict[str, Any]]:
        try:
            key = parse_block_key(raw_key)
        except ValueError as exc:
            raise BadRequest(str(exc)) from exc
        block = self.ledger.lookup(key)
        if block is None:
            return 404, {"ok": False, "error": "Block not found"}
        return 200, block.to_dict()

    def _check_requested_difficulty(self, difficulty: Any) -> int | None:
        if difficulty is None:
            return None
        try:
            value = check_difficulty(difficulty, minimum=1)
        except ValueError as exc:
            raise BadRequest(str(exc)) from exc
        if value > self.config.max_difficulty:
            raise BadRequest(f"Difficulty must be <= {self.config.max_difficulty}")
        return value

    def mine(self, data: Any, difficulty: Any = None) -> Block:
        target = self._check_requested_difficulty(difficulty)
        with self._mine_state_lock:
            if self._mine_future is not None and not self._mine_future.done():
                raise MiningBusyError("A mining operation is already in progress")
            future = self._miner.submit(
                self.ledger.append,
                data,
                target,
                False,
                self.stop_event.is_set,
            )
            self._mine_future = future
        try:
            block = future.result()
        except ValueError as exc:
            raise BadRequest(str(exc)) from exc
        # The block is appended and persisted; delivery to peers is best-effort.
        self.gossip.broadcast(block, self.peers.get_peers())
        return block

    def receive_block(self, raw: Any) -> tuple[int, dict[str, Any]]:
        try:
            block = Block.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            raise BadRequest(f"Malformed block: {exc}") from exc
        verdict = self.gossip.on_receive(block)
        height = self.ledger.height
        if verdict:
            return 200, {"ok": True, "adopted": True, "height": height}
        return 409, {
            "ok": False,
            "adopted": False,
            "reason": verdict.reason.value if verdict.reason else "rejected",
            "height": height,
        }

    def add_peers(self, raw_peers: Any) -> dict[str, Any]:
        if not isinstance(raw_peers, list):
            raise BadRequest("Field 'peers' must be a list of URLs")
        added = 0
        rejected: dict[str, str] = {}
        for item in raw_peers:
            if not isinstance(item, str):
                continue
            try:
                ok, reason, peer_url = self.peers.add(item, persist=False)
            except ValueError as exc:
                rejected[item] = str(exc)
                continue
            if ok:
                added += 1
            else:
                rejected[peer_url] = reason
        self.peers.save()
        return {"ok": True, "added": added, "rejected": rejected, "peers": self.peers.get_peers()}

    def remove_peers(self, raw_peers: Any) -> dict[str, Any]:
        if not isinstance(raw_peers, list):
            raise BadRequest("Field 'peers' must be a list of URLs")
        removed = 0
        for item in raw_peers:
            if not isinstance(item, str):
                continue
            try:
                if self.peers.remove(item, persist=False):
                    removed += 1
            except ValueError:
                continue
        self.peers.save()
        return {"ok": True, "removed": removed, "peers": self.peers.get_peers()}

    def resolve(self) -> dict[str, Any]:
        return self.resolver.resolve(self.peers.get_peers()).to_dict()

    def set_default_difficulty(self, difficulty: Any) -> dict[str, Any]:
        try:
            value = self.ledger.set_default_difficulty(difficulty)
        except ValueError as exc:
            raise BadRequest(str(exc)) from exc
        return {"ok": True, "defaultDifficulty": value}

    def serve_forever(self) -> None:
        logger.info("%s listening on %s (data dir %s)", self.node_name, self.node_url, self.data_dir)
        try:
            self.server.serve_forever(poll_interval=0.5)
        finally:
            self.shutdown()

    def start(self) -> None:
        self._serve_thread = threading.Thread(
            target=self.server.serve_forever,
            kwargs={"poll_interval": 0.1},
            name=f"{self.node_name}-http",
            daemon=True,
        )
        self._serve_thread.start()

    def shutdown(self) -> None:
        if self.stop_event.is_set():
            return
        self.stop_event.set()
        if self._serve_thread is not None:
            self.server.shutdown()
            self._serve_thread.join(timeout=2.0)
        self.server.server_close()
        self._miner.shutdown(wait=False, cancel_futures=True)
        self.gossip.shutdown()
