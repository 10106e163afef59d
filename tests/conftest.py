import io
import json
import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import Tuple

import pytest
from PIL import Image

from kestrel.assets.io import MemoryAssetIO
from kestrel.assets.loaders import AssetLoader, LoadContext
from kestrel.assets.server import AssetServer
from kestrel.assets.settings import AssetServerSettings


@dataclass(frozen=True)
class Doc:
    name: str
    deps: Tuple[str, ...] = ()


class DocLoader(AssetLoader):
    """
    JSON documents: {"name": ..., "deps": [...], "optional": [...],
    "labels": {"Label": "name"}}. Counts parses per path.
    """

    type_tag = "doc"
    extensions = (".json", ".gltf")

    def __init__(self):
        self.parses = Counter()
        self._lock = threading.Lock()

    def load(self, data: bytes, context: LoadContext) -> Doc:
        with self._lock:
            self.parses[str(context.path)] += 1

        payload = json.loads(data)
        for dep in payload.get("deps", []):
            context.load(dep)
        for dep in payload.get("optional", []):
            context.load(dep, required=False)
        for label, name in payload.get("labels", {}).items():
            context.set_labeled_asset(label, Doc(name))
        return Doc(payload["name"], tuple(payload.get("deps", [])))


class CountingIO(MemoryAssetIO):
    """MemoryAssetIO that counts reads and can hold a read until released."""

    def __init__(self, files=None):
        super().__init__(files)
        self.reads = Counter()
        self.blocked = Counter()
        self._gates = {}
        self._count_lock = threading.Lock()

    def gate(self, path: str) -> threading.Event:
        event = threading.Event()
        self._gates[path] = event
        return event

    def release_all(self):
        for event in self._gates.values():
            event.set()

    def read(self, path: str) -> bytes:
        gate = self._gates.get(path)
        if gate is not None and not gate.is_set():
            with self._count_lock:
                self.blocked[path] += 1
            gate.wait(5)
        with self._count_lock:
            self.reads[path] += 1
        return super().read(path)

    @property
    def total_reads(self) -> int:
        with self._count_lock:
            return sum(self.reads.values())


def doc(name, **fields) -> str:
    return json.dumps({"name": name, **fields})


def png(width=2, height=2, color="red") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def files():
    """Returns a fresh CountingIO for each test."""
    source = CountingIO()
    yield source
    source.release_all()


@pytest.fixture
def doc_loader():
    return DocLoader()


@pytest.fixture
def make_server(files, doc_loader):
    servers = []

    def factory(**overrides):
        settings = AssetServerSettings(**{"persist_metadata": False, **overrides})
        server = AssetServer(settings, source_io=files)
        server.register_loader(doc_loader)
        servers.append(server)
        return server

    yield factory
    files.release_all()
    for server in servers:
        server.shutdown(wait=False)


@pytest.fixture
def server(make_server):
    return make_server()


@pytest.fixture
def wait_until():
    def wait(predicate, timeout=5.0):
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("Condition not met in time")
            time.sleep(0.005)

    return wait


@pytest.fixture
def make_doc():
    return doc


@pytest.fixture
def make_png():
    return png
