# kestrel/assets/server.py
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Set,
    Tuple,
    Type,
    TypeVar,
    Union,
)

from kestrel.assets.derive import AssetDerivation, DerivationRegistry
from kestrel.assets.errors import (
    AssetError,
    AssetIoError,
    DeserializeError,
    DependencyFailedError,
    IncorrectAssetTypeError,
    LoadCancelledError,
    MetadataWriteError,
    SerializeError,
)
from kestrel.assets.events import AssetEvent, AssetEventKind, AssetLoadFailed
from kestrel.assets.graph import DependencyEdge, DependencyGraph
from kestrel.assets.handle import AssetId, Handle, IdAllocator, RefCounter
from kestrel.assets.io import FileAssetIO, SourceIO
from kestrel.assets.loaders import AssetLoader, LoadedAsset, LoaderRegistry, default_loaders
from kestrel.assets.meta import AssetSourceMeta, ImportResult, MetadataStore, fingerprint
from kestrel.assets.path import DEFAULT_SOURCE, AssetPath, SourceId
from kestrel.assets.registry import Assets
from kestrel.assets.serializers import AssetSerializer, SerializerRegistry, default_serializers
from kestrel.assets.settings import AssetServerSettings
from kestrel.assets.state import LoadState
from kestrel.core.events import EventManager

logger = logging.getLogger(__name__)

T = TypeVar("T")
PathLike = Union[str, AssetPath]
IdLike = Union[AssetId, Handle]


class LoadCompletion:
    """Resolves once with the terminal LoadState of one load attempt."""

    def __init__(self) -> None:
        self._state: Optional[LoadState] = None
        self._callbacks: List[Callable[[LoadState], None]] = []
        self._event = threading.Event()
        self._lock = threading.Lock()

    @classmethod
    def resolved(cls, state: LoadState) -> LoadCompletion:
        completion = cls()
        completion.set(state)
        return completion

    @property
    def done(self) -> bool:
        return self._event.is_set()

    def set(self, state: LoadState) -> None:
        with self._lock:
            if self._state is not None:
                return
            self._state = state
            callbacks, self._callbacks = self._callbacks, []
            self._event.set()
        for callback in callbacks:
            callback(state)

    def add_done_callback(self, callback: Callable[[LoadState], None]) -> None:
        with self._lock:
            if self._state is None:
                self._callbacks.append(callback)
                return
            state = self._state
        callback(state)

    def wait(self, timeout: Optional[float] = None) -> Optional[LoadState]:
        self._event.wait(timeout)
        return self._state


class _Countdown:
    def __init__(self, count: int, on_zero: Callable[[], None]) -> None:
        self._remaining = count
        self._on_zero = on_zero
        self._lock = threading.Lock()

    def arrive(self, _state: LoadState) -> None:
        with self._lock:
            self._remaining -= 1
            fire = self._remaining == 0
        if fire:
            self._on_zero()


@dataclass(eq=False)
class _SourceRecord:
    """Bookkeeping for one source path (label stripped)."""

    path: AssetPath
    version: int = 0
    state: LoadState = LoadState.REQUESTED
    error: Optional[AssetError] = None
    partial: bool = False
    degraded: bool = False
    committed: bool = False
    completion: LoadCompletion = field(default_factory=LoadCompletion)
    cancel: threading.Event = field(default_factory=threading.Event)
    produced: Dict[Optional[str], AssetId] = field(default_factory=dict)
    staged: Optional[ImportResult] = None
    dependency_handles: List[Handle] = field(default_factory=list)
    # Owned by the attempt in flight; handed over on commit, undone on failure.
    staged_handles: List[Handle] = field(default_factory=list)
    restore_edges: Dict[AssetId, List[DependencyEdge]] = field(default_factory=dict)


@dataclass(frozen=True)
class _Failure:
    path: AssetPath
    asset_id: Optional[AssetId]
    error: AssetError
    state: LoadState
    completion: LoadCompletion


class AssetServer:
    """
    Loads assets on background threads and owns their lifetime.

    ``load`` returns a strong handle immediately; the value shows up in the
    typed store once the source and all its required dependencies are
    loaded. ``update`` is the synchronisation point where dropped handles
    turn into removals and watched sources turn into reloads.
    """

    def __init__(
        self,
        settings: Optional[AssetServerSettings] = None,
        *,
        source_io: Optional[SourceIO] = None,
        sources: Optional[Dict[SourceId, SourceIO]] = None,
        meta_io: Optional[SourceIO] = None,
        import_io: Optional[SourceIO] = None,
    ) -> None:
        self.settings = settings or AssetServerSettings()

        self._sources_io: Dict[SourceId, SourceIO] = dict(sources or {})
        if source_io is not None:
            self._sources_io[DEFAULT_SOURCE] = source_io
        elif DEFAULT_SOURCE not in self._sources_io:
            self._sources_io[DEFAULT_SOURCE] = FileAssetIO(self.settings.asset_root)
        default_io = self._sources_io[DEFAULT_SOURCE]

        if not self.settings.persist_metadata:
            meta_io = None
        elif meta_io is None:
            meta_io = FileAssetIO(self.settings.meta_root) if self.settings.meta_root else default_io
        if import_io is None and self.settings.import_root is not None:
            import_io = FileAssetIO(self.settings.import_root)

        self.events = EventManager()
        self.loaders = LoaderRegistry()
        self.serializers = SerializerRegistry()
        self.derivations = DerivationRegistry()
        if self.settings.register_default_loaders:
            for loader in default_loaders():
                self.loaders.register(loader)
            for serializer in default_serializers():
                self.serializers.register(serializer)

        self.metadata = MetadataStore(
            self._read,
            self.loaders,
            derivations=self.derivations,
            serializers=self.serializers,
            meta_io=meta_io,
            import_io=import_io,
        )
        self.graph = DependencyGraph()

        self._ref_counter = RefCounter()
        self._ids = IdAllocator()
        self._stores: Dict[type, Assets[Any]] = {}
        self._stores_lock = threading.Lock()

        # Guards everything below, including the in-flight table.
        self._lock = threading.RLock()
        self._records: Dict[AssetPath, _SourceRecord] = {}
        self._in_flight: Dict[AssetPath, _SourceRecord] = {}
        self._path_ids: Dict[AssetPath, AssetId] = {}
        self._id_paths: Dict[AssetId, AssetPath] = {}
        self._source_ids: Dict[AssetPath, Set[AssetId]] = {}
        self._id_types: Dict[AssetId, type] = {}
        self._pending_unload: Set[AssetPath] = set()
        self._watching = False
        self._closed = False

        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.max_workers, thread_name_prefix="AssetWorker"
        )
        self._reload_executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="AssetReload"
        )

        if self.settings.watch_for_changes:
            self.watch_for_changes()

    # Registration

    def register_loader(self, loader: AssetLoader) -> None:
        self.loaders.register(loader)

    def register_serializer(self, serializer: AssetSerializer) -> None:
        self.serializers.register(serializer)

    def register_derivation(self, derivation: AssetDerivation) -> None:
        self.derivations.register(derivation)

    def register_source(self, source: SourceId, io: SourceIO) -> None:
        with self._lock:
            self._sources_io[source] = io

    def assets(self, asset_type: Type[T]) -> Assets[T]:
        """The typed store for ``asset_type``, created on first use."""
        with self._stores_lock:
            store = self._stores.get(asset_type)
            if store is None:
                store = Assets(asset_type)
                self._stores[asset_type] = store
            return store

    # Loading

    def load(
        self,
        path: PathLike,
        asset_type: Optional[Type[T]] = None,
        *,
        partial_dependencies: Optional[bool] = None,
    ) -> Handle[T]:
        """
        Non-blocking load request. Return handle instantly.

        Repeated or concurrent requests for one source share a single read
        and parse. ``partial_dependencies`` overrides the server setting for
        a load this call starts.
        """
        asset_path = AssetPath.parse(path)
        source = asset_path.without_label()

        with self._lock:
            if self._closed:
                raise RuntimeError("AssetServer has been shut down")

            asset_id = self._id_for(asset_path)
            handle: Handle[T] = Handle.strong(asset_id, self._ref_counter, asset_type)

            record = self._records.get(source)
            if source in self._in_flight:
                logger.debug("Attaching to in-flight load of %s", source)
                return handle
            if record is not None and record.state is LoadState.LOADED:
                return handle

            record = self._begin(source, partial_dependencies)
            version = record.version

        logger.debug("Queued load of %s (attempt %d)", source, version)
        self._executor.submit(self._run_load, record, version)
        return handle

    request_load = load

    def load_untyped(self, path: PathLike) -> Handle[Any]:
        return self.load(path)

    def load_folder(self, path: PathLike) -> List[Handle[Any]]:
        """Load every file below ``path`` that has a registered loader."""
        folder = AssetPath.parse(path)
        io = self._io_for(folder)
        if not io.is_dir(folder.path):
            raise AssetIoError(f"Asset folder path is not a directory: {folder}", path=folder)

        handles: List[Handle[Any]] = []
        for child in io.read_directory(folder.path):
            child_path = AssetPath(child, source=folder.source)
            if io.is_dir(child):
                handles.extend(self.load_folder(child_path))
            elif self.loaders.has_loader_for(child_path):
                handles.append(self.load_untyped(child_path))
        return handles

    def add(self, value: T, asset_id: Optional[AssetId] = None) -> Handle[T]:
        """Insert a value that has no source; returns a strong handle."""
        asset_type = type(value)
        with self._lock:
            if asset_id is None:
                asset_id = self._ids.allocate()
            else:
                self._ids.claim(asset_id)
            self.assets(asset_type).insert(asset_id, value)
            self._id_types[asset_id] = asset_type
            handle: Handle[T] = Handle.strong(asset_id, self._ref_counter, asset_type)

        self.events.emit(AssetEvent(AssetEventKind.ADDED, asset_id, asset_type))
        return handle

    def get_handle(self, path: PathLike, asset_type: Optional[Type[T]] = None) -> Optional[Handle[T]]:
        """A new strong handle for an already requested path, without loading."""
        asset_path = AssetPath.parse(path)
        with self._lock:
            asset_id = self._path_ids.get(asset_path)
            if asset_id is None:
                return None
            return Handle.strong(asset_id, self._ref_counter, asset_type)

    # Queries

    def get(self, handle: IdLike) -> Any:
        """Current value behind a handle or id, None when not (or no longer) loaded."""
        asset_id, expected = self._unpack(handle)
        with self._lock:
            actual = self._id_types.get(asset_id)
        if actual is None:
            return None
        if expected is not None and not issubclass(actual, expected):
            raise IncorrectAssetTypeError(
                f"{asset_id} holds {actual.__name__}, not {expected.__name__}",
                asset_id=asset_id,
            )
        return self.assets(actual).get(asset_id)

    def get_generation(self, handle: IdLike) -> Optional[int]:
        asset_id, _ = self._unpack(handle)
        with self._lock:
            actual = self._id_types.get(asset_id)
        if actual is None:
            return None
        entry = self.assets(actual).entry(asset_id)
        return entry.generation if entry is not None else None

    def is_degraded(self, handle: IdLike) -> bool:
        asset_id, _ = self._unpack(handle)
        with self._lock:
            actual = self._id_types.get(asset_id)
        if actual is None:
            return False
        entry = self.assets(actual).entry(asset_id)
        return entry is not None and entry.degraded

    def get_load_state(self, handle: IdLike) -> Optional[LoadState]:
        asset_id, _ = self._unpack(handle)
        with self._lock:
            path = self._id_paths.get(asset_id)
            if path is None:
                return LoadState.LOADED if asset_id in self._id_types else None
            record = self._records.get(path.without_label())
            if record is None:
                return None
            if record.state is LoadState.LOADED and asset_id not in self._id_types:
                return LoadState.FAILED
            return record.state

    def get_load_error(self, handle: IdLike) -> Optional[AssetError]:
        asset_id, _ = self._unpack(handle)
        with self._lock:
            path = self._id_paths.get(asset_id)
            record = self._records.get(path.without_label()) if path is not None else None
            if record is None:
                return None
            if record.error is not None:
                return record.error
            if record.state is LoadState.LOADED and asset_id not in self._id_types:
                return DeserializeError(f"{record.path} has no sub-asset '{path.label}'", path=path, asset_id=asset_id)
            return None

    def get_group_load_state(self, handles: Iterable[IdLike]) -> Optional[LoadState]:
        """FAILED if any failed, LOADED if all loaded, else the least advanced state."""
        states = [self.get_load_state(h) for h in handles]
        if not states or any(s is None for s in states):
            return None
        if LoadState.FAILED in states:
            return LoadState.FAILED
        if all(s is LoadState.LOADED for s in states):
            return LoadState.LOADED
        pending = [s for s in states if s is not LoadState.LOADED]
        return min(pending, key=lambda s: s.progress)  # type: ignore[union-attr]

    def get_handle_path(self, handle: IdLike) -> Optional[AssetPath]:
        asset_id, _ = self._unpack(handle)
        with self._lock:
            return self._id_paths.get(asset_id)

    def wait_for_load(self, handle: IdLike, timeout: Optional[float] = None) -> Optional[LoadState]:
        """Block until the source behind ``handle`` settles; TimeoutError otherwise."""
        asset_id, _ = self._unpack(handle)
        with self._lock:
            path = self._id_paths.get(asset_id)
            record = self._records.get(path.without_label()) if path is not None else None
            completion = record.completion if record is not None else None
        if completion is not None and completion.wait(timeout) is None:
            raise TimeoutError(f"Timed out waiting for {path}")
        return self.get_load_state(asset_id)

    # Metadata, saving

    def get_or_import(self, path: PathLike) -> AssetSourceMeta:
        return self.metadata.get_or_import(AssetPath.parse(path))

    def save(self, path: PathLike, value: Any) -> None:
        """Serialize ``value`` with its registered serializer and write it out."""
        asset_path = AssetPath.parse(path)
        serializer = self.serializers.for_type(type(value))
        try:
            data = serializer.serialize(value)
        except AssetError:
            raise
        except Exception as e:
            raise SerializeError(f"Could not serialize {type(value).__name__}: {e}", path=asset_path) from e
        self._io_for(asset_path).write(asset_path.path, data)
        logger.debug("Saved %s (%d bytes)", asset_path, len(data))

    # Reloading

    def reload(self, path: PathLike) -> Future:
        """
        Queue a hot reload of ``path`` and its dependents.
        The future resolves to the ids whose values were replaced.
        """
        source = AssetPath.parse(path).without_label()
        with self._lock:
            if self._closed:
                raise RuntimeError("AssetServer has been shut down")
        return self._reload_executor.submit(self._reload_batch, source)

    def watch_for_changes(self) -> None:
        with self._lock:
            self._watching = True
            loaded = [r.path for r in self._records.values() if r.committed]
        for path in loaded:
            self._io_for(path).watch(path.path)

    def unload(self, path: PathLike) -> None:
        """
        Cancel any in-flight load of the source and remove its assets at the
        next ``update`` even if handles remain; they then resolve to None.
        """
        source = AssetPath.parse(path).without_label()
        with self._lock:
            record = self._records.get(source)
            if record is None:
                return
            self._pending_unload.add(source)
            failure = self._detach(
                record, None, LoadCancelledError(f"Load of {source} cancelled by unload", path=source), LoadState.UNLOADED
            )
            record.state = LoadState.UNLOADED

        if failure is not None:
            self._announce_failure(failure)

    # Sync point

    def update(self) -> List[AssetId]:
        """
        Called once per tick on the consumer's thread. Applies dropped
        handles, removes unreferenced assets and schedules reloads for
        changed sources. Returns the removed AssetIds.
        """
        removed: List[AssetId] = []
        failures: List[_Failure] = []
        events: List[AssetEvent] = []

        with self._lock:
            for source in self._pending_unload:
                record = self._records.get(source)
                if record is not None:
                    removed.extend(self._remove_source(record, events))
            self._pending_unload.clear()

            while self._ref_counter.pending():
                touched = self._ref_counter.drain()
                candidates: Set[AssetPath] = set()
                for asset_id, count in touched.items():
                    asset_type = self._id_types.get(asset_id)
                    if asset_type is not None:
                        self.assets(asset_type).set_strong_count(asset_id, count)
                    if count > 0:
                        continue

                    path = self._id_paths.get(asset_id)
                    if path is not None:
                        candidates.add(path.without_label())
                    elif asset_type is not None:
                        removed.append(self._remove_id(asset_id, events))

                for source in candidates:
                    ids = self._source_ids.get(source, set())
                    if any(self._ref_counter.count(i) > 0 for i in ids):
                        continue
                    record = self._records.get(source)
                    if record is None:
                        continue
                    # Out of the in-flight table before the record goes, so a
                    # concurrent load starts over instead of attaching to it.
                    failure = self._detach(
                        record, None, LoadCancelledError(f"Load of {source} dropped", path=source), LoadState.UNLOADED
                    )
                    if failure is not None:
                        failures.append(failure)
                    removed.extend(self._remove_source(record, events))

            watching = self._watching
            sources_io = list(self._sources_io.items())

        for event in events:
            self.events.emit(event)
        for failure in failures:
            self._announce_failure(failure)

        if watching:
            for source_id, io in sources_io:
                for changed in io.poll_changes():
                    path = AssetPath(changed, source=source_id)
                    with self._lock:
                        known = path in self._records and not self._closed
                    if known:
                        logger.info("Source changed, reloading %s", path)
                        self.reload(path)

        if removed:
            logger.debug("Removed %d assets", len(removed))
        return removed

    # Shutdown

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            in_flight = list(self._in_flight.values())

        for record in in_flight:
            self._abort(record, LoadCancelledError("Asset server shut down", path=record.path), LoadState.FAILED)
        self._reload_executor.shutdown(wait=wait, cancel_futures=True)
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def __enter__(self) -> AssetServer:
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    # Load pipeline

    def _begin(self, source: AssetPath, partial: Optional[bool]) -> _SourceRecord:
        record = self._records.get(source)
        if record is None:
            record = _SourceRecord(path=source)
            self._records[source] = record
        record.version += 1
        record.state = LoadState.REQUESTED
        record.error = None
        record.partial = self.settings.partial_dependencies if partial is None else partial
        record.completion = LoadCompletion()
        record.cancel = threading.Event()
        record.staged = None
        record.staged_handles = []
        record.restore_edges = {}
        self._pending_unload.discard(source)
        self._in_flight[source] = record
        return record

    def _is_current(self, record: _SourceRecord, version: int) -> bool:
        return (
            record.version == version
            and self._in_flight.get(record.path) is record
            and not record.cancel.is_set()
        )

    def _advance(self, record: _SourceRecord, version: int, state: LoadState) -> bool:
        with self._lock:
            if not self._is_current(record, version):
                return False
            record.state = state
            return True

    def _run_load(self, record: _SourceRecord, version: int) -> None:
        try:
            self._load_source(record, version)
        except AssetError as e:
            self._fail(record, version, e)
        except Exception as e:
            if self._closed:
                logger.debug("Load of %s interrupted by shutdown: %s", record.path, e)
            else:
                logger.exception("Unexpected error while loading %s", record.path)
            self._fail(record, version, DeserializeError(str(e), path=record.path))

    def _load_source(self, record: _SourceRecord, version: int) -> None:
        source = record.path
        if not self._advance(record, version, LoadState.READING):
            return
        data = self._read(source)

        if not self._advance(record, version, LoadState.PARSING):
            return

        # Handles given to the loader may be dropped as soon as it returns;
        # hold our own until _stage has taken over.
        held: List[Handle] = []

        def request(path: AssetPath) -> Handle[Any]:
            handle = self.request_load(path)
            held.append(handle.clone())
            return handle

        try:
            result = self.metadata.load_imported(source, data)
            if result is None:
                result = self.metadata.import_source(source, data, requester=request)
            self._stage(record, version, result, held)
        finally:
            for handle in held:
                handle.drop()

    def _stage(
        self,
        record: _SourceRecord,
        version: int,
        result: ImportResult,
        held: Optional[List[Handle]] = None,
    ) -> None:
        """Record ids and dependency edges, then wait for dependencies."""
        source = record.path
        with self._lock:
            if not self._is_current(record, version):
                return
            record.produced = {label: self._id_for(source.with_label(label)) for label in result.assets}
            record.restore_edges = {i: self.graph.edges_of(i) for i in record.produced.values()}
            for label, asset_id in record.produced.items():
                loaded = result.assets[label]
                edges = [
                    DependencyEdge(asset_id, self._id_for(dep), dep, loaded.is_required(dep))
                    for dep in loaded.dependencies
                ]
                self.graph.set_dependencies(asset_id, edges)
            record.staged = result
            record.state = LoadState.WAITING_ON_DEPENDENCIES

        external = self._external_dependencies(source, result.assets.values())
        handles = [self.request_load(dep) for dep in external]
        with self._lock:
            current = self._is_current(record, version)
            if current:
                record.staged_handles = handles
                completions = [(dep, self._completion_for(dep.without_label())) for dep in external]
        for handle in held or []:
            handle.drop()
        if not current:
            for handle in handles:
                handle.drop()
            return

        if not completions:
            self._finish_load(record, version)
            return

        logger.debug("%s waiting on %d dependencies", source, len(completions))
        countdown = _Countdown(len(completions), lambda: self._finish_load(record, version))
        for dep, completion in completions:
            if external[dep] and not record.partial:
                completion.add_done_callback(
                    lambda state, dep=dep: self._dependency_settled(record, version, dep, state)
                )
            completion.add_done_callback(countdown.arrive)

    def _dependency_settled(
        self, record: _SourceRecord, version: int, dependency: AssetPath, state: LoadState
    ) -> None:
        # Fail fast on a required dependency instead of waiting for the rest.
        if state is LoadState.LOADED:
            return
        self._fail(
            record,
            version,
            DependencyFailedError(
                f"Required dependency {dependency} of {record.path} failed",
                failed=(dependency,),
                path=record.path,
            ),
        )

    def _finish_load(self, record: _SourceRecord, version: int) -> None:
        with self._lock:
            if not self._is_current(record, version) or record.staged is None:
                return
            failed, degraded = self._unmet_dependencies(record.path, record.staged.assets)

        if failed and not record.partial:
            names = ", ".join(str(p) for p in failed)
            self._fail(
                record,
                version,
                DependencyFailedError(f"{record.path} has failed dependencies: {names}", failed=failed, path=record.path),
            )
            return
        if degraded:
            logger.warning("%s loaded with missing dependencies", record.path)
        self._commit(record, version, degraded)

    def _commit(self, record: _SourceRecord, version: int, degraded: bool) -> None:
        events: List[AssetEvent] = []
        with self._lock:
            if not self._is_current(record, version) or record.staged is None:
                return
            staged = record.staged
            for label, loaded in staged.assets.items():
                asset_id = record.produced[label]
                kind = self._store_value(asset_id, loaded.value, degraded)
                events.append(AssetEvent(kind, asset_id, type(loaded.value)))

            record.state = LoadState.LOADED
            record.error = None
            record.degraded = degraded
            record.committed = True
            record.staged = None
            record.restore_edges = {}
            previous, record.dependency_handles = record.dependency_handles, record.staged_handles
            record.staged_handles = []
            del self._in_flight[record.path]
            completion = record.completion
            watching = self._watching

        for handle in previous:
            handle.drop()
        # Values are in the store before metadata and events go out.
        self._persist_meta(record.path, staged.meta)
        if watching:
            self._io_for(record.path).watch(record.path.path)
        for event in events:
            self.events.emit(event)
        logger.debug("Loaded %s (%d assets)", record.path, len(events))
        completion.set(LoadState.LOADED)

    def _fail(self, record: _SourceRecord, version: int, error: AssetError) -> None:
        with self._lock:
            failure = self._detach(record, version, error, LoadState.FAILED)
        if failure is not None:
            self._announce_failure(failure)

    def _abort(self, record: _SourceRecord, error: AssetError, state: LoadState) -> None:
        with self._lock:
            failure = self._detach(record, None, error, state)
        if failure is not None:
            self._announce_failure(failure)

    def _detach(
        self,
        record: _SourceRecord,
        version: Optional[int],
        error: AssetError,
        state: LoadState,
    ) -> Optional[_Failure]:
        """
        End the attempt in flight for ``record`` and undo its staging.
        Expects self._lock held; the completion is resolved by
        ``_announce_failure`` once the lock is released.
        """
        if self._in_flight.get(record.path) is not record:
            return None
        if version is not None and record.version != version:
            return None
        del self._in_flight[record.path]
        record.cancel.set()

        record.state = state
        record.error = error
        record.staged = None
        if error.path is None:
            error.path = record.path
        for asset_id, edges in record.restore_edges.items():
            self.graph.set_dependencies(asset_id, edges)
        record.restore_edges = {}
        for handle in record.staged_handles:
            handle.drop()
        record.staged_handles = []
        return _Failure(record.path, self._path_ids.get(record.path), error, state, record.completion)

    def _announce_failure(self, failure: _Failure) -> None:
        if isinstance(failure.error, LoadCancelledError):
            logger.debug("Load of %s cancelled", failure.path)
        else:
            logger.warning("Failed to load %s: %s", failure.path, failure.error)
        self.events.emit(AssetLoadFailed(failure.path, failure.asset_id, failure.error))
        failure.completion.set(failure.state)

    # Reload pipeline (runs on the reload worker)

    def _reload_batch(self, root: AssetPath) -> List[AssetId]:
        modified: List[AssetId] = []
        if not self._reload_source(root, force=False, modified=modified):
            return modified

        with self._lock:
            root_ids = set(self._source_ids.get(root, ()))
        dependents = self.graph.transitive_dependents(root_ids)

        visited: Set[AssetPath] = {root}
        order: List[AssetPath] = []
        for asset_id in self.graph.reload_order(dependents | root_ids):
            with self._lock:
                path = self._id_paths.get(asset_id)
            if path is None:
                continue
            source = path.without_label()
            if source not in visited:
                visited.add(source)
                order.append(source)

        for source in order:
            self._reload_source(source, force=True, modified=modified)
        logger.info("Reloaded %s and %d dependents", root, len(order))
        return modified

    def _reload_source(self, source: AssetPath, force: bool, modified: List[AssetId]) -> bool:
        with self._lock:
            record = self._records.get(source)
            if record is None or not record.committed or not self._is_reload_target(record):
                logger.debug("Skipping reload of %s: not loaded or load in flight", source)
                return False

        try:
            data = self._read(source)
        except AssetError as e:
            self._reload_failed(record, e)
            return False

        if not force and self.metadata.is_current(source, fingerprint(data)):
            logger.debug("Reload of %s skipped, content unchanged", source)
            return False

        previous_edges: Dict[AssetId, List[DependencyEdge]] = {}
        handles: List[Handle] = []
        try:
            result = self.metadata.import_source(source, data, requester=self.request_load)
            with self._lock:
                # Ids are only allocated while the source is still live.
                if not self._is_reload_target(record):
                    logger.debug("Dropping reload of %s: source removed", source)
                    return False
                produced = {label: self._id_for(source.with_label(label)) for label in result.assets}
                for asset_id in produced.values():
                    previous_edges[asset_id] = self.graph.edges_of(asset_id)
                for label, asset_id in produced.items():
                    loaded = result.assets[label]
                    self.graph.set_dependencies(
                        asset_id,
                        [DependencyEdge(asset_id, self._id_for(d), d, loaded.is_required(d)) for d in loaded.dependencies],
                    )

            external = self._external_dependencies(source, result.assets.values())
            handles = [self.request_load(dep) for dep in external]
            for dep in external:
                with self._lock:
                    completion = self._completion_for(dep.without_label())
                completion.wait()

            with self._lock:
                failed, degraded = self._unmet_dependencies(source, result.assets)
            if failed and not record.partial:
                names = ", ".join(str(p) for p in failed)
                raise DependencyFailedError(f"{source} has failed dependencies: {names}", failed=failed, path=source)
        except AssetError as e:
            self._undo_reload(record, previous_edges, handles)
            self._reload_failed(record, e)
            return False

        events: List[AssetEvent] = []
        with self._lock:
            live = self._is_reload_target(record)
            if live:
                for label, loaded in result.assets.items():
                    asset_id = produced[label]
                    kind = self._store_value(asset_id, loaded.value, degraded)
                    events.append(AssetEvent(kind, asset_id, type(loaded.value)))
                    if kind is AssetEventKind.MODIFIED:
                        modified.append(asset_id)
                record.produced.update(produced)
                record.state = LoadState.LOADED
                record.error = None
                record.degraded = degraded
                previous, record.dependency_handles = record.dependency_handles, handles

        if not live:
            logger.debug("Dropping reload of %s: source removed", source)
            self._undo_reload(record, previous_edges, handles)
            return False

        for handle in previous:
            handle.drop()
        self._persist_meta(source, result.meta)
        for event in events:
            self.events.emit(event)
        logger.debug("Reloaded %s", source)
        return True

    def _is_reload_target(self, record: _SourceRecord) -> bool:
        source = record.path
        return (
            self._records.get(source) is record
            and not self._closed
            and source not in self._pending_unload
            and self._in_flight.get(source) is not record
        )

    def _undo_reload(
        self,
        record: _SourceRecord,
        previous_edges: Dict[AssetId, List[DependencyEdge]],
        handles: List[Handle],
    ) -> None:
        with self._lock:
            # A load started meanwhile owns the edges; removed ids have none.
            if self._in_flight.get(record.path) is not record:
                for asset_id, edges in previous_edges.items():
                    if asset_id in self._id_paths:
                        self.graph.set_dependencies(asset_id, edges)
        for handle in handles:
            handle.drop()

    def _reload_failed(self, record: _SourceRecord, error: AssetError) -> None:
        with self._lock:
            record.state = LoadState.FAILED
            record.error = error
            asset_id = self._path_ids.get(record.path)
        logger.warning("Reload of %s failed, keeping previous values: %s", record.path, error)
        self.events.emit(AssetLoadFailed(record.path, asset_id, error))

    # Helpers; the ones touching shared maps expect self._lock to be held.

    def _read(self, path: AssetPath) -> bytes:
        return self._io_for(path).read(path.path)

    def _io_for(self, path: AssetPath) -> SourceIO:
        io = self._sources_io.get(path.source)
        if io is None:
            raise AssetIoError(f"Unknown asset source '{path.source}'", path=path)
        return io

    def _unpack(self, handle: IdLike) -> Tuple[AssetId, Optional[type]]:
        if isinstance(handle, Handle):
            return handle.id, handle.asset_type
        return handle, None

    def _id_for(self, path: AssetPath) -> AssetId:
        asset_id = self._path_ids.get(path)
        if asset_id is None:
            asset_id = self._ids.allocate(AssetId.index_for_path(path))
            self._path_ids[path] = asset_id
            self._id_paths[asset_id] = path
            self._source_ids.setdefault(path.without_label(), set()).add(asset_id)
        return asset_id

    def _completion_for(self, source: AssetPath) -> LoadCompletion:
        record = self._records.get(source)
        if record is None:
            return LoadCompletion.resolved(LoadState.FAILED)
        return record.completion

    def _external_dependencies(self, source: AssetPath, assets: Iterable[LoadedAsset]) -> Dict[AssetPath, bool]:
        """Dependencies outside ``source``, mapped to whether any asset requires them."""
        required: Dict[AssetPath, bool] = {}
        for loaded in assets:
            for dep in loaded.dependencies:
                if dep.without_label() != source:
                    required[dep] = required.get(dep, False) or loaded.is_required(dep)
        return required

    def _unmet_dependencies(
        self, source: AssetPath, assets: Dict[Optional[str], LoadedAsset]
    ) -> Tuple[List[AssetPath], bool]:
        failed: List[AssetPath] = []
        degraded = False
        for loaded in assets.values():
            for dep in loaded.dependencies:
                if dep.without_label() == source:
                    ok = dep.label in assets
                else:
                    ok = self._is_loaded(dep)
                if ok:
                    continue
                degraded = True
                if loaded.is_required(dep) and dep not in failed:
                    failed.append(dep)
        return failed, degraded

    def _is_loaded(self, path: AssetPath) -> bool:
        record = self._records.get(path.without_label())
        asset_id = self._path_ids.get(path)
        return (
            record is not None
            and record.state is LoadState.LOADED
            and asset_id is not None
            and asset_id in self._id_types
        )

    def _store_value(self, asset_id: AssetId, value: Any, degraded: bool) -> AssetEventKind:
        asset_type = type(value)
        previous = self._id_types.get(asset_id)
        store = self.assets(asset_type)
        if previous is asset_type and asset_id in store:
            store.replace(asset_id, value, degraded=degraded)
            kind = AssetEventKind.MODIFIED
        else:
            if previous is not None:
                self.assets(previous).remove(asset_id)
            store.insert(asset_id, value, degraded=degraded)
            kind = AssetEventKind.ADDED if previous is None else AssetEventKind.MODIFIED
        store.set_strong_count(asset_id, self._ref_counter.count(asset_id))
        self._id_types[asset_id] = asset_type
        return kind

    def _persist_meta(self, source: AssetPath, meta: AssetSourceMeta) -> None:
        try:
            self.metadata.store(source, meta)
        except MetadataWriteError as e:
            logger.warning("%s", e)

    def _remove_id(self, asset_id: AssetId, events: List[AssetEvent]) -> AssetId:
        asset_type = self._id_types.pop(asset_id, None)
        if asset_type is not None:
            self.assets(asset_type).remove(asset_id)
            events.append(AssetEvent(AssetEventKind.REMOVED, asset_id, asset_type))
        path = self._id_paths.pop(asset_id, None)
        if path is not None and self._path_ids.get(path) == asset_id:
            del self._path_ids[path]
        self.graph.remove_node(asset_id)
        self._ids.retire(asset_id)
        return asset_id

    def _remove_source(self, record: _SourceRecord, events: List[AssetEvent]) -> List[AssetId]:
        source = record.path
        removed = [self._remove_id(i, events) for i in self._source_ids.pop(source, set())]
        for handle in record.dependency_handles:
            handle.drop()
        record.dependency_handles = []
        if self._records.get(source) is record:
            del self._records[source]
        self.metadata.forget(source)
        io = self._sources_io.get(source.source)
        if io is not None:
            io.unwatch(source.path)
        return removed
