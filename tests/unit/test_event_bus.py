from pathlib import Path
from vproc.domain.events import Event, JobCompleted, JobCreated, JobEvent, JobProgress
from vproc.domain.models import ProcessingJob, ProcessingRequest
from vproc.infrastructure.event_bus import EventBus


def make_job(job_id="job_1") -> ProcessingJob:
    return ProcessingJob(id=job_id, request=ProcessingRequest(source=Path("a.mp4"), destination=Path("b.mp4")))


def test_subscribe_and_publish():
    bus = EventBus()
    received = []
    bus.subscribe(JobCreated, received.append)

    event = JobCreated(job=make_job())
    bus.publish(event)
    bus.publish(JobProgress(job=make_job(), percent=10))

    assert received == [event]
    assert received[0].job_id == "job_1"


def test_base_class_subscription_receives_subclasses():
    bus = EventBus()
    received = []
    bus.subscribe(JobEvent, received.append)
    bus.publish(JobCreated(job=make_job()))
    bus.publish(JobProgress(job=make_job(), percent=50))
    bus.publish(Event())
    assert [type(e) for e in received] == [JobCreated, JobProgress]


def test_listeners_called_in_registration_order():
    bus = EventBus()
    calls = []
    bus.subscribe(Event, lambda e: calls.append("first"))
    bus.subscribe(JobCreated, lambda e: calls.append("second"))
    bus.subscribe(Event, lambda e: calls.append("third"))
    bus.publish(JobCreated(job=make_job()))
    assert calls == ["first", "second", "third"]


def test_failing_listener_does_not_stop_delivery(caplog):
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("listener bug")

    bus.subscribe(Event, broken)
    bus.subscribe(Event, received.append)
    bus.publish(JobCreated(job=make_job()))

    assert len(received) == 1
    assert "listener bug" in caplog.text


def test_unsubscribe():
    bus = EventBus()
    received = []
    bus.subscribe(JobCreated, received.append)
    bus.subscribe(JobProgress, received.append)

    bus.unsubscribe(received.append, JobCreated)
    bus.publish(JobCreated(job=make_job()))
    bus.publish(JobProgress(job=make_job(), percent=5))
    assert len(received) == 1

    bus.unsubscribe(received.append)
    bus.publish(JobProgress(job=make_job(), percent=6))
    assert len(received) == 1


def test_listener_may_subscribe_during_publish():
    bus = EventBus()
    late = []

    def subscriber(event):
        bus.subscribe(JobCompleted, late.append)

    bus.subscribe(JobCreated, subscriber)
    bus.publish(JobCreated(job=make_job()))
    assert late == []
