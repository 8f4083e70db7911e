"""Tests for submitting jobs through the QueueDispatcher"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from dossier.exception import PayloadValidationError, UnknownStageError


def test_submit_derives_job_id_and_enqueues(dispatcher, backend):
    job_id = dispatcher.submit("company-discovery", "discover", {"companyNumber": "123"})

    assert job_id == "co:123"

    queued = backend.get(job_id)
    assert queued is not None
    assert queued.queue == "company-discovery"
    assert queued.name == "discover"
    assert queued.payload == {"companyNumber": "123"}
    assert queued.max_attempts == 5
    assert queued.backoff_seconds == 1.5


def test_resubmitting_is_a_noop(dispatcher, backend):
    """The same logical request twice yields one job."""

    first = dispatcher.submit("company-discovery", None, {"companyNumber": "123"})
    second = dispatcher.submit("company-discovery", None, {"companyNumber": "123", "postcode": "AB1 2CD"})

    assert first == second
    assert backend.counts()["waiting"] == 1
    assert backend.get(first).payload == {"companyNumber": "123"}


def test_concurrent_submissions_resolve_to_one_job(dispatcher, backend):
    payload = {"companyNumber": "08123456", "firstName": "Ada", "lastName": "Lovelace"}

    with ThreadPoolExecutor(max_workers=8) as pool:
        job_ids = list(pool.map(lambda _: dispatcher.submit("ch-appointments", "fetch", payload), range(16)))

    assert set(job_ids) == {"ch:08123456:ada:lovelace:"}
    assert backend.counts("ch-appointments")["waiting"] == 1


def test_ch_appointments_job_id_includes_contact():
    from dossier.stages import ch_appointments_key

    payload = {"companyNumber": "123", "firstName": "ADA", "lastName": "Lovelace", "contactId": "c-1"}
    assert ch_appointments_key(payload) == "ch:123:ada:lovelace:c-1"


def test_company_discovery_falls_back_to_name(dispatcher):
    assert dispatcher.submit("company-discovery", None, {"companyName": "Acme Ltd"}) == "co:Acme Ltd"


def test_owner_discovery_normalises_address(dispatcher, backend):
    """Addresses differing only in case, spacing and punctuation are the same job."""

    first = dispatcher.submit("owner-discovery", None, {"address": {"line1": "1 High St.", "postcode": "ab1 2cd"}})
    second = dispatcher.submit("owner-discovery", None, {"address": {"line1": "1  HIGH ST", "postcode": "AB12CD"}})

    assert first == second
    assert first.startswith("owner:AB12CD:")
    assert backend.counts("owner-discovery")["waiting"] == 1


def test_person_linkedin_ids(dispatcher):
    assert dispatcher.submit("person-linkedin", None, {"personId": "p-123"}) == "person:p-123"

    person = {"firstName": "Ada", "lastName": "Lovelace"}
    assert dispatcher.submit("person-linkedin", None, {"person": person, "jobId": "person:7:123"}) == "person:7:123"

    generated = dispatcher.submit("person-linkedin", None, {"person": person})
    assert generated.startswith("person:")


def test_explicit_job_id_wins(dispatcher, backend):
    job_id = dispatcher.submit(
        "company-discovery", "discover", {"companyNumber": "42", "rootJobId": "ch:1"}, job_id="co:ch:1:42", priority=1
    )

    assert job_id == "co:ch:1:42"
    assert backend.get(job_id).priority == 1


def test_invalid_payload_is_rejected_before_enqueue(dispatcher, backend):
    with pytest.raises(PayloadValidationError):
        dispatcher.submit("company-discovery", None, {})

    with pytest.raises(PayloadValidationError):
        dispatcher.submit("ch-appointments", None, {"companyNumber": "1"})

    with pytest.raises(PayloadValidationError):
        dispatcher.submit("ch-appointments", None, {"companyNumber": 12345})

    with pytest.raises(PayloadValidationError):
        dispatcher.submit("site-fetch", None, {"host": "acme.example", "companyNumber": "1"})

    with pytest.raises(PayloadValidationError):
        dispatcher.submit("person-linkedin", None, {"person": {"firstName": "Ada"}})

    with pytest.raises(PayloadValidationError):
        dispatcher.submit("owner-discovery", None, {"address": {"line1": "1 High St"}})

    with pytest.raises(PayloadValidationError):
        dispatcher.submit("company-discovery", None, ["not", "a", "mapping"])

    assert sum(backend.counts().values()) == 0


def test_extra_payload_fields_are_allowed(dispatcher):
    job_id = dispatcher.submit("site-fetch", None, {"host": "acme.example", "companyNumber": "1", "companyName": "Acme", "hint": 3})

    assert job_id == "site:1:acme.example"


def test_unknown_stage(dispatcher):
    with pytest.raises(UnknownStageError):
        dispatcher.submit("nope", None, {})


def test_remove_before_pickup(dispatcher, backend):
    job_id = dispatcher.submit("company-discovery", None, {"companyNumber": "9"})

    assert dispatcher.remove(job_id) is True
    assert dispatcher.remove(job_id) is False
    assert backend.get(job_id) is None


def test_remove_after_pickup_fails(dispatcher, backend):
    job_id = dispatcher.submit("company-discovery", None, {"companyNumber": "9"})
    backend.claim("company-discovery", "worker-1")

    assert dispatcher.remove(job_id) is False
    assert backend.get(job_id) is not None
