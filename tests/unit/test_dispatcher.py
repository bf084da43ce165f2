from threading import Event

from conftest import cluster_doc
from vip_agent.dispatcher import ReconcileDispatcher
from vip_agent.events import ClusterDelete, ClusterUpsert
from vip_allocator.config import AllocatorConfig
from vip_allocator.reconciler import ClusterReconciler, ReconcileResult, RoleOutcome, RoleState


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class RecordingReconciler:
    def __init__(self, results=None):
        self.calls = []
        self.roles = []
        self.results = list(results or [])

    def __call__(self, namespace, name, stop_event, roles=None):
        self.calls.append(f"{namespace}/{name}")
        self.roles.append(roles)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return ReconcileResult()


def build(reconciler, clock, **kwargs):
    return ReconcileDispatcher(reconciler, Event(), clock=clock, **kwargs)


def drain(dispatcher):
    while dispatcher.process_next():
        pass


def test_duplicate_events_collapse():
    clock = FakeClock()
    reconciler = RecordingReconciler()
    dispatcher = build(reconciler, clock)

    dispatcher.handle(ClusterUpsert("default", "t1"))
    dispatcher.handle(ClusterUpsert("default", "t1"))
    dispatcher.handle(ClusterUpsert("default", "t2"))
    drain(dispatcher)

    assert reconciler.calls == ["default/t1", "default/t2"]


def test_requeue_after_is_delayed():
    clock = FakeClock()
    reconciler = RecordingReconciler([ReconcileResult(requeue_after=10.0)])
    dispatcher = build(reconciler, clock)

    dispatcher.enqueue("default/t1")
    drain(dispatcher)
    assert reconciler.calls == ["default/t1"]
    assert dispatcher.pending() == 1

    clock.now = 9.0
    assert not dispatcher.process_next()

    clock.now = 10.0
    assert dispatcher.process_next()
    assert reconciler.calls == ["default/t1", "default/t1"]
    assert dispatcher.pending() == 0


def test_event_moves_delayed_key_forward():
    clock = FakeClock()
    dispatcher = build(RecordingReconciler(), clock)

    dispatcher.enqueue("default/t1", delay=30.0)
    dispatcher.enqueue("default/t1")

    assert dispatcher.process_next()
    assert dispatcher.pending() == 0


def test_delete_forgets_scheduled_key():
    clock = FakeClock()
    reconciler = RecordingReconciler()
    dispatcher = build(reconciler, clock)

    dispatcher.enqueue("default/t1", delay=5.0)
    dispatcher.handle(ClusterDelete("default", "t1"))
    clock.now = 6.0
    drain(dispatcher)

    assert reconciler.calls == []


def test_event_during_processing_reruns_key():
    clock = FakeClock()
    dispatcher = None
    calls = []

    def reconcile(namespace, name, stop_event, roles=None):
        calls.append(name)
        if len(calls) == 1:
            dispatcher.enqueue(f"{namespace}/{name}")
        return ReconcileResult()

    dispatcher = build(reconcile, clock)
    dispatcher.enqueue("default/t1")
    drain(dispatcher)

    assert calls == ["t1", "t1"]


def test_unexpected_exception_is_retried():
    clock = FakeClock()
    reconciler = RecordingReconciler([RuntimeError("boom")])
    dispatcher = build(reconciler, clock, retry_delay=3.0)

    dispatcher.enqueue("default/t1")
    drain(dispatcher)
    clock.now = 3.0
    drain(dispatcher)

    assert reconciler.calls == ["default/t1", "default/t1"]


def test_configuration_error_is_not_requeued():
    clock = FakeClock()
    reconciler = RecordingReconciler([ReconcileResult(error=ValueError("no pool"))])
    dispatcher = build(reconciler, clock)

    dispatcher.enqueue("default/t1")
    drain(dispatcher)

    assert dispatcher.pending() == 0


def test_workers_drain_queue_and_stop():
    done = Event()
    seen = []

    def reconcile(namespace, name, stop_event, roles=None):
        seen.append(name)
        if len(seen) == 3:
            done.set()
        return ReconcileResult()

    dispatcher = ReconcileDispatcher(reconcile, Event(), workers=2)
    for name in ("a", "b", "c"):
        dispatcher.enqueue(f"default/{name}")
    dispatcher.start()

    assert done.wait(5.0)
    dispatcher.stop()
    dispatcher.join(timeout=5.0)
    assert sorted(seen) == ["a", "b", "c"]


def pending_result(*roles):
    return ReconcileResult(
        requeue_after=10.0,
        roles={role: RoleOutcome(role, RoleState.PENDING) for role in roles},
    )


def test_requeue_only_revisits_retry_roles():
    clock = FakeClock()
    reconciler = RecordingReconciler(
        [
            ReconcileResult(
                requeue_after=10.0,
                roles={
                    "control-plane": RoleOutcome("control-plane", RoleState.PENDING),
                    "ingress": RoleOutcome("ingress", RoleState.CONFIG_ERROR),
                },
            )
        ]
    )
    dispatcher = build(reconciler, clock)

    dispatcher.enqueue("default/t1")
    drain(dispatcher)
    clock.now = 10.0
    drain(dispatcher)

    assert reconciler.roles == [None, frozenset({"control-plane"})]


def test_event_widens_scoped_requeue():
    clock = FakeClock()
    reconciler = RecordingReconciler([pending_result("control-plane")])
    dispatcher = build(reconciler, clock)

    dispatcher.enqueue("default/t1")
    drain(dispatcher)
    dispatcher.handle(ClusterUpsert("default", "t1"))
    drain(dispatcher)

    assert reconciler.roles == [None, None]


def test_event_during_processing_runs_every_role():
    clock = FakeClock()
    dispatcher = None
    seen = []

    def reconcile(namespace, name, stop_event, roles=None):
        seen.append(roles)
        if len(seen) == 1:
            dispatcher.enqueue(f"{namespace}/{name}")
            return pending_result("control-plane")
        return ReconcileResult()

    dispatcher = build(reconcile, clock)
    dispatcher.enqueue("default/t1")
    drain(dispatcher)

    assert seen == [None, None]


def test_delete_releases_cluster_state():
    clock = FakeClock()
    forgotten = []
    dispatcher = build(
        RecordingReconciler(), clock, forget=lambda ns, name: forgotten.append((ns, name))
    )

    dispatcher.handle(ClusterDelete("default", "t1"))

    assert forgotten == [("default", "t1")]


def test_configuration_error_role_is_not_retried(store, metrics):
    store.add_pool("p1", "cls-x", "control-plane")
    store.add_class("cls-x")
    store.add_target(cluster_doc("t1"))
    reconciler = ClusterReconciler(store, AllocatorConfig(), metrics, now=lambda: store.now)
    clock = FakeClock()
    dispatcher = build(reconciler.reconcile, clock)

    dispatcher.enqueue("default/t1")
    for step in range(5):
        clock.now = step * 10.0
        drain(dispatcher)

    assert dispatcher.pending() == 1
    assert store.calls.count("list_pools") == 2
    assert metrics.sample(
        "capi_vip_allocator_allocation_errors_total",
        {"role": "ingress", "cluster_class": "cls-x", "reason": "no_matching_pool"},
    ) == 1.0
