import pytest

from tacklebox.errors import InvalidStateTransitionError, ValidationError
from tacklebox.models import (
    Job,
    JobStatus,
    JobType,
    ProgressEvent,
    can_transition,
    check_transition,
)


@pytest.mark.parametrize("raw", ["ShopReel", "shop-reel", "shop_reel", "SHOP_REEL", "shopreel"])
def test_job_type_parse_accepts_spellings(raw):
    assert JobType.parse(raw) == JobType.SHOP_REEL


def test_job_type_parse_rejects_unknown():
    with pytest.raises(ValidationError):
        JobType.parse("TroutTracker")


def test_state_machine_edges():
    assert can_transition(JobStatus.PENDING, JobStatus.RUNNING)
    assert can_transition(JobStatus.PENDING, JobStatus.CANCELLED)
    assert can_transition(JobStatus.RUNNING, JobStatus.FAILED)
    assert not can_transition(JobStatus.PENDING, JobStatus.COMPLETED)
    assert not can_transition(JobStatus.RUNNING, JobStatus.PENDING)
    for terminal in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED):
        assert terminal.is_terminal
        for target in JobStatus:
            assert not can_transition(terminal, target)


def test_check_transition_raises():
    with pytest.raises(InvalidStateTransitionError) as info:
        check_transition("job-1", JobStatus.COMPLETED, JobStatus.RUNNING)
    assert info.value.current == "COMPLETED"
    assert info.value.target == "RUNNING"


def test_new_job_is_pending_with_unique_id():
    a = Job.new(JobType.SHOP_REEL, {"q": 1})
    b = Job.new(JobType.SHOP_REEL, {"q": 1})
    assert a.status == JobStatus.PENDING
    assert a.id != b.id
    assert a.result_files == []


def test_progress_event_to_dict():
    evt = ProgressEvent(job_id="j", sequence=3, message="m", timestamp=1.0, status=JobStatus.FAILED, final=True)
    assert evt.to_dict() == {
        "job_id": "j",
        "sequence": 3,
        "message": "m",
        "timestamp": 1.0,
        "status": "FAILED",
        "final": True,
    }
