import threading

import pytest

from kestrel.assets.errors import (
    CyclicDependencyError,
    DependencyFailedError,
    DeserializeError,
    ErrorKind,
    IncorrectAssetTypeError,
    LoadCancelledError,
)
from kestrel.assets.events import AssetEvent, AssetEventKind, AssetLoadFailed
from kestrel.assets.handle import Handle
from kestrel.assets.io import FileAssetIO, MemoryAssetIO
from kestrel.assets.server import AssetServer
from kestrel.assets.settings import AssetServerSettings
from kestrel.assets.state import LoadState
from kestrel.assets.types import ShaderSource, TextureData


def test_asset_server_async_load(tmp_path):
    f = tmp_path / "test_async.glsl"
    f.write_text("void main() {}")

    with AssetServer(AssetServerSettings(asset_root=tmp_path)) as server:
        handle = server.load("test_async.glsl", ShaderSource)

        assert isinstance(handle, Handle)
        assert handle.is_strong
        assert str(server.get_handle_path(handle)) == "test_async.glsl"

        assert server.wait_for_load(handle, timeout=5) is LoadState.LOADED

        loaded = server.get(handle)
        assert loaded.source == "void main() {}"
        assert (tmp_path / "test_async.glsl.meta").exists()


def test_asset_server_caching(tmp_path):
    f = tmp_path / "cached_file.glsl"
    f.write_text("void main() {}")

    with AssetServer(AssetServerSettings(asset_root=tmp_path)) as server:
        h1 = server.load("cached_file.glsl")
        h2 = server.load("cached_file.glsl")

        assert h1 == h2
        assert h1.id == h2.id


def test_load_returns_before_read_completes(server, files, make_doc):
    files.write("a.json", make_doc("a"))
    gate = files.gate("a.json")

    handle = server.load("a.json")

    assert not server.get_load_state(handle).is_terminal
    assert server.get(handle) is None

    gate.set()
    assert server.wait_for_load(handle, timeout=5) is LoadState.LOADED
    assert server.get(handle).name == "a"


def test_concurrent_requests_share_one_read(server, files, doc_loader, make_doc):
    files.write("a.json", make_doc("a"))
    gate = files.gate("a.json")
    handles = []
    lock = threading.Lock()

    def request():
        handle = server.load("a.json")
        with lock:
            handles.append(handle)

    threads = [threading.Thread(target=request) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    gate.set()

    server.wait_for_load(handles[0], timeout=5)

    assert len({h.id for h in handles}) == 1
    assert files.reads["a.json"] == 1
    assert doc_loader.parses["a.json"] == 1


def test_repeated_request_after_load_does_not_reread(server, files, make_doc):
    files.write("a.json", make_doc("a"))
    first = server.load("a.json")
    server.wait_for_load(first, timeout=5)

    second = server.load("a.json")

    assert second.id == first.id
    assert server.get_load_state(second) is LoadState.LOADED
    assert files.reads["a.json"] == 1


def test_mesh_waits_for_both_textures(server, files, make_doc, make_png, wait_until):
    files.write("mesh.gltf", make_doc("mesh", deps=["tex1.png", "tex2.png"]))
    files.write("tex1.png", make_png())
    files.write("tex2.png", make_png(color="blue"))
    gate = files.gate("tex2.png")

    mesh = server.load("mesh.gltf")
    again = server.load("mesh.gltf")

    wait_until(lambda: server.get_load_state(mesh) is LoadState.WAITING_ON_DEPENDENCIES)
    assert server.get(mesh) is None

    gate.set()
    assert server.wait_for_load(mesh, timeout=5) is LoadState.LOADED

    tex1 = server.get_handle("tex1.png", TextureData)
    tex2 = server.get_handle("tex2.png", TextureData)
    assert server.get_load_state(tex1) is LoadState.LOADED
    assert server.get_load_state(tex2) is LoadState.LOADED
    assert len({mesh.id, tex1.id, tex2.id}) == 3
    assert again.id == mesh.id
    assert files.total_reads == 3

    added = [e.asset_id for e in server.events.get(AssetEvent) if e.kind is AssetEventKind.ADDED]
    assert added.index(mesh.id) > added.index(tex1.id)
    assert added.index(mesh.id) > added.index(tex2.id)


def test_failed_dependency_fails_dependent(server, files, make_doc):
    files.write("a.json", make_doc("a", deps=["b.json", "c.json"]))
    files.write("b.json", make_doc("b"))

    handle = server.load("a.json")

    assert server.wait_for_load(handle, timeout=5) is LoadState.FAILED
    error = server.get_load_error(handle)
    assert isinstance(error, DependencyFailedError)
    assert [str(p) for p in error.failed] == ["c.json"]
    assert server.get(handle) is None

    b = server.get_handle("b.json")
    server.wait_for_load(b, timeout=5)
    assert server.get_load_state(b) is LoadState.LOADED

    failed_paths = {str(e.path) for e in server.events.get(AssetLoadFailed)}
    assert failed_paths == {"a.json", "c.json"}


def test_partial_dependencies_mark_degraded(make_server, files, make_doc):
    server = make_server(partial_dependencies=True)
    files.write("a.json", make_doc("a", deps=["b.json", "missing.json"]))
    files.write("b.json", make_doc("b"))

    handle = server.load("a.json")

    assert server.wait_for_load(handle, timeout=5) is LoadState.LOADED
    assert server.is_degraded(handle)
    assert server.get(handle).name == "a"


def test_partial_dependencies_per_request(server, files, make_doc):
    files.write("a.json", make_doc("a", deps=["missing.json"]))

    handle = server.load("a.json", partial_dependencies=True)

    assert server.wait_for_load(handle, timeout=5) is LoadState.LOADED
    assert server.is_degraded(handle)


def test_missing_optional_dependency_degrades(server, files, make_doc):
    files.write("a.json", make_doc("a", optional=["missing.json"]))

    handle = server.load("a.json")

    assert server.wait_for_load(handle, timeout=5) is LoadState.LOADED
    assert server.is_degraded(handle)


def test_dependency_cycle_fails_both(server, files, make_doc):
    files.write("a.json", make_doc("a", deps=["b.json"]))
    files.write("b.json", make_doc("b", deps=["a.json"]))

    a = server.load("a.json")
    server.wait_for_load(a, timeout=5)
    b = server.get_handle("b.json")
    server.wait_for_load(b, timeout=5)

    assert server.get_load_state(a) is LoadState.FAILED
    assert server.get_load_state(b) is LoadState.FAILED
    errors = [server.get_load_error(a), server.get_load_error(b)]
    assert any(isinstance(e, CyclicDependencyError) for e in errors)
    assert len(server.graph) == 0


def test_self_dependency_is_a_cycle(server, files, make_doc):
    files.write("a.json", make_doc("a", deps=["a.json"]))

    handle = server.load("a.json")

    assert server.wait_for_load(handle, timeout=5) is LoadState.FAILED
    assert server.get_load_error(handle).kind is ErrorKind.CYCLIC_DEPENDENCY


def test_missing_source_is_io_error(server):
    handle = server.load("nope.json")

    assert server.wait_for_load(handle, timeout=5) is LoadState.FAILED
    assert server.get_load_error(handle).kind is ErrorKind.IO


def test_unknown_extension_is_loader_not_found(server, files):
    files.write("notes.xyz", "hello")

    handle = server.load("notes.xyz")

    assert server.wait_for_load(handle, timeout=5) is LoadState.FAILED
    assert server.get_load_error(handle).kind is ErrorKind.LOADER_NOT_FOUND


def test_malformed_source_is_deserialize_error(server, files):
    files.write("bad.json", "{not json")

    handle = server.load("bad.json")

    assert server.wait_for_load(handle, timeout=5) is LoadState.FAILED
    assert isinstance(server.get_load_error(handle), DeserializeError)


def test_failed_load_can_be_retried(server, files, make_doc):
    handle = server.load("late.json")
    assert server.wait_for_load(handle, timeout=5) is LoadState.FAILED

    files.write("late.json", make_doc("late"))
    retry = server.load("late.json")

    assert server.wait_for_load(retry, timeout=5) is LoadState.LOADED
    assert server.get(handle).name == "late"


def test_labeled_assets_share_one_read(server, files, make_doc):
    files.write("scene.json", make_doc("scene", labels={"Floor": "floor", "Wall": "wall"}))

    floor = server.load("scene.json#Floor")
    scene = server.load("scene.json")
    missing = server.load("scene.json#Roof")
    server.wait_for_load(scene, timeout=5)

    assert server.get(floor).name == "floor"
    assert server.get(scene).name == "scene"
    assert floor.id != scene.id
    assert server.get_load_state(missing) is LoadState.FAILED
    assert files.reads["scene.json"] == 1


def test_get_with_wrong_type_raises(server, files, make_doc):
    files.write("a.json", make_doc("a"))

    handle = server.load("a.json", TextureData)
    server.wait_for_load(handle, timeout=5)

    with pytest.raises(IncorrectAssetTypeError):
        server.get(handle)
    assert server.get(handle.id).name == "a"


def test_dropping_last_handle_removes_on_update(server, files, make_doc):
    files.write("a.json", make_doc("a"))
    handle = server.load("a.json")
    server.wait_for_load(handle, timeout=5)
    weak = handle.downgrade()
    asset_id = handle.id

    handle.drop()
    assert server.get(weak).name == "a"

    removed = server.update()

    assert asset_id in removed
    assert server.get(weak) is None
    assert server.get_load_state(weak) is None
    removals = [e for e in server.events.get(AssetEvent) if e.kind is AssetEventKind.REMOVED]
    assert [e.asset_id for e in removals] == [asset_id]


def test_reloaded_path_gets_fresh_id(server, files, make_doc):
    files.write("a.json", make_doc("a"))
    handle = server.load("a.json")
    server.wait_for_load(handle, timeout=5)
    weak = handle.downgrade()
    handle.drop()
    server.update()

    again = server.load("a.json")
    server.wait_for_load(again, timeout=5)

    assert again.id != weak.id
    assert again.id.index == weak.id.index
    assert server.get(weak) is None
    assert server.get(again).name == "a"


def test_clone_keeps_asset_alive(server, files, make_doc):
    files.write("a.json", make_doc("a"))
    handle = server.load("a.json")
    server.wait_for_load(handle, timeout=5)
    clone = handle.clone()

    handle.drop()
    assert server.update() == []
    assert server.get(clone).name == "a"
    assert server.assets(type(server.get(clone))).entry(clone.id).strong_count == 1

    clone.drop()
    assert server.update() == [clone.id]


def test_dropping_dependent_releases_dependencies(server, files, make_doc):
    files.write("a.json", make_doc("a", deps=["b.json"]))
    files.write("b.json", make_doc("b", deps=["c.json"]))
    files.write("c.json", make_doc("c"))
    handle = server.load("a.json")
    server.wait_for_load(handle, timeout=5)
    c = server.get_handle("c.json").downgrade()

    handle.drop()
    removed = server.update()

    assert len(removed) == 3
    assert server.get(c) is None
    assert len(server.graph) == 0


def test_unload_removes_even_with_live_handles(server, files, make_doc):
    files.write("a.json", make_doc("a"))
    handle = server.load("a.json")
    server.wait_for_load(handle, timeout=5)

    server.unload("a.json")
    removed = server.update()

    assert removed == [handle.id]
    assert server.get(handle) is None
    handle.drop()
    assert server.update() == []


def test_unload_cancels_in_flight_load(server, files, make_doc):
    files.write("a.json", make_doc("a"))
    gate = files.gate("a.json")
    handle = server.load("a.json")

    server.unload("a.json")
    gate.set()

    assert server.wait_for_load(handle, timeout=5) is LoadState.UNLOADED
    assert isinstance(server.get_load_error(handle), LoadCancelledError)
    server.update()
    assert server.get(handle) is None


def test_load_after_unload_keeps_asset(server, files, make_doc):
    files.write("a.json", make_doc("a"))
    handle = server.load("a.json")
    server.wait_for_load(handle, timeout=5)

    server.unload("a.json")
    again = server.load("a.json")
    assert server.wait_for_load(again, timeout=5) is LoadState.LOADED

    assert server.update() == []
    assert server.get(handle).name == "a"


def test_load_while_dropped_load_is_cancelled_starts_over(server, files, make_doc, monkeypatch):
    files.write("a.json", make_doc("a"))
    gate = files.gate("a.json")
    handle = server.load("a.json")
    handle.drop()

    # Another thread asks for the path just as update() cancels the old load.
    late = []
    announce = server._announce_failure

    def load_then_announce(failure):
        if not late:
            late.append(server.load("a.json"))
        announce(failure)

    monkeypatch.setattr(server, "_announce_failure", load_then_announce)
    assert server.update() == [handle.id]
    gate.set()

    assert late[0].id != handle.id
    assert server.wait_for_load(late[0], timeout=5) is LoadState.LOADED
    assert server.get(late[0]).name == "a"
    assert server.get(handle) is None


def test_failed_load_after_unload_restores_edges(server, files, make_doc):
    files.write("a.json", make_doc("a", deps=["b.json"]))
    files.write("b.json", make_doc("b"))
    a = server.load("a.json")
    assert server.wait_for_load(a, timeout=5) is LoadState.LOADED
    b = server.get_handle("b.json")

    server.unload("a.json")
    files.write("a.json", make_doc("a2", deps=["missing.json"]))
    again = server.load("a.json")

    assert server.wait_for_load(again, timeout=5) is LoadState.FAILED
    assert server.graph.dependencies_of(a.id) == {b.id}
    assert server.get(a).name == "a"


def test_strong_count_is_refreshed_by_update(server, files, make_doc):
    files.write("a.json", make_doc("a"))
    handle = server.load("a.json")
    server.wait_for_load(handle, timeout=5)
    store = server.assets(type(server.get(handle)))

    assert store.entry(handle.id).strong_count == 0
    server.update()
    assert store.entry(handle.id).strong_count == 1

    extra = handle.clone()
    server.update()
    assert store.entry(handle.id).strong_count == 2
    extra.drop()


def test_add_inserts_value_without_source(server):
    value = TextureData(data=b"\x00" * 4, width=1, height=1, components=4)

    handle = server.add(value)

    assert server.get(handle) is value
    assert server.get_load_state(handle) is LoadState.LOADED
    assert server.get_handle_path(handle) is None
    assert server.events.get(AssetEvent)[0].kind is AssetEventKind.ADDED

    handle.drop()
    assert server.update() == [handle.id]
    assert server.get(handle) is None


def test_load_folder(server, files, make_doc):
    files.write("level/a.json", make_doc("a"))
    files.write("level/props/b.json", make_doc("b"))
    files.write("level/readme.txt", "not an asset")

    handles = server.load_folder("level")
    for handle in handles:
        server.wait_for_load(handle, timeout=5)

    names = sorted(server.get(h).name for h in handles)
    assert names == ["a", "b"]
    assert server.get_group_load_state(handles) is LoadState.LOADED


def test_group_load_state_reports_failure(server, files, make_doc):
    files.write("a.json", make_doc("a"))
    good = server.load("a.json")
    bad = server.load("missing.json")
    server.wait_for_load(good, timeout=5)
    server.wait_for_load(bad, timeout=5)

    assert server.get_group_load_state([good, bad]) is LoadState.FAILED


def test_save_writes_serialized_value(server, files):
    value = TextureData(data=bytes(range(16)), width=2, height=2, components=4)

    server.save("baked/tex.ktex", value)

    restored = server.serializers.for_type(TextureData).deserialize(files.read("baked/tex.ktex"))
    assert restored == value


def test_metadata_written_to_source_io(make_server, files, make_doc):
    server = make_server(persist_metadata=True)
    files.write("a.json", make_doc("a", deps=["b.json"]))
    files.write("b.json", make_doc("b"))

    handle = server.load("a.json")
    server.wait_for_load(handle, timeout=5)

    meta = server.metadata.get(server.get_handle_path(handle))
    assert meta.loader == "doc"
    assert meta.dependencies_of(None) == ("b.json",)
    assert files.exists("a.json.meta")


def test_shutdown_cancels_pending_loads(server, files, make_doc):
    files.write("a.json", make_doc("a"))
    gate = files.gate("a.json")
    handle = server.load("a.json")

    server.shutdown(wait=False)
    gate.set()

    assert server.wait_for_load(handle, timeout=5) is LoadState.FAILED
    assert server.get_load_error(handle).kind is ErrorKind.CANCELLED
    with pytest.raises(RuntimeError):
        server.load("a.json")


def test_file_source_reads_from_disk(tmp_path):
    (tmp_path / "shaders").mkdir()
    (tmp_path / "shaders" / "common.glsl").write_text("float x;")
    (tmp_path / "shaders" / "main.glsl").write_text('#include "common.glsl"\nvoid main() {}')

    settings = AssetServerSettings(persist_metadata=False)
    with AssetServer(settings, source_io=FileAssetIO(tmp_path)) as server:
        handle = server.load("shaders/main.glsl", ShaderSource)
        assert server.wait_for_load(handle, timeout=5) is LoadState.LOADED

        shader = server.get(handle)
        assert shader.includes == ("shaders/common.glsl",)
        common = server.get_handle("shaders/common.glsl")
        assert server.get_load_state(common) is LoadState.LOADED


def test_named_sources_are_separate(server, make_doc):
    remote = MemoryAssetIO({"a.json": make_doc("remote")})
    server.register_source("remote", remote)

    handle = server.load("remote://a.json")

    assert server.wait_for_load(handle, timeout=5) is LoadState.LOADED
    assert server.get(handle).name == "remote"
    assert str(server.get_handle_path(handle)) == "remote://a.json"


def test_get_or_import_does_not_load(server, files, doc_loader, make_doc):
    files.write("a.json", make_doc("a", deps=["b.json"]))

    meta = server.get_or_import("a.json")
    again = server.get_or_import("a.json")

    assert again == meta
    assert meta.dependencies_of(None) == ("b.json",)
    assert doc_loader.parses["a.json"] == 1
    assert server.get_handle("a.json") is None
