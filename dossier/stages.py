"""Stage definitions: which queues exist, what their payloads look like, how their
job IDs are derived and how they retry.

The registry is the one place that knows the set of stages; the dispatcher uses it
to validate and key submissions, the aggregator to zero-fill per-stage counts, and
the worker pool to size each stage's concurrency.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, NotRequired, TypedDict

from typeguard import check_type

from dossier import constants
from dossier.config import Settings
from dossier.exception import DuplicateStageError, PayloadValidationError, UnknownStageError
from dossier.utils.hash import compute_address_key
from dossier.utils.id_generator import generate_job_id
from dossier.utils.logging_config import get_logger

log = get_logger(__name__)

# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
# Type Aliases
# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++

type Payload = Mapping[str, Any]

type Precheck = Callable[[Payload], Exception | None]

type JobKey = Callable[[Payload], str]


# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
# Payload schemas
# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++


class ChAppointmentsPayload(TypedDict):
    companyNumber: str
    companyName: NotRequired[str]
    firstName: NotRequired[str]
    lastName: NotRequired[str]
    contactId: NotRequired[str]
    rootJobId: NotRequired[str]


class CompanyDiscoveryPayload(TypedDict):
    companyNumber: NotRequired[str]
    companyName: NotRequired[str]
    address: NotRequired[str]
    postcode: NotRequired[str]
    rootJobId: NotRequired[str]


class SiteFetchPayload(TypedDict):
    host: str
    companyNumber: str
    companyName: str
    rootJobId: NotRequired[str]
    parentJobId: NotRequired[str]


class PersonName(TypedDict):
    firstName: str
    lastName: str
    middleNames: NotRequired[str]
    dob: NotRequired[str]


class PersonContext(TypedDict, total=False):
    companyNumber: str
    companyName: str
    websites: list[str]
    companyLinkedIns: list[str]
    personalLinkedIns: list[str]


class PersonLinkedinPayload(TypedDict):
    personId: NotRequired[str]
    person: NotRequired[PersonName]
    context: NotRequired[PersonContext]
    rootJobId: NotRequired[str]
    jobId: NotRequired[str]


class Address(TypedDict):
    line1: str
    postcode: str
    line2: NotRequired[str]
    city: NotRequired[str]
    county: NotRequired[str]
    country: NotRequired[str]


class OwnerDiscoveryPayload(TypedDict):
    address: Address
    rootJobId: NotRequired[str]


# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
# Prechecks
# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++


def create_typeddict_precheck(payload_type: type | None) -> Precheck:
    """Create a precheck function that validates against a TypedDict using typeguard.

    Only the keys the TypedDict declares are checked, so payloads may carry extra
    handler-specific fields.
    """

    if payload_type is None:
        return lambda payload: None

    declared = set(payload_type.__required_keys__) | set(payload_type.__optional_keys__)  # type: ignore[attr-defined]

    def typeddict_precheck(payload: Payload) -> Exception | None:
        if not isinstance(payload, Mapping):
            return PayloadValidationError(f"Payload must be a JSON object, got {type(payload).__name__}")

        try:
            check_type({key: value for key, value in payload.items() if key in declared}, payload_type)
            return None
        except Exception as err:
            exc = PayloadValidationError(f"{payload_type.__name__} validation failed: {err}")
            exc.__cause__ = err
            return exc

    return typeddict_precheck


def _present(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _check_ch_appointments(payload: Payload) -> Exception | None:
    if len(str(payload.get("companyNumber", "")).strip()) < 2:
        return PayloadValidationError("companyNumber must be at least 2 characters")
    return None


def _check_company_discovery(payload: Payload) -> Exception | None:
    if not (_present(payload.get("companyNumber")) or _present(payload.get("companyName"))):
        return PayloadValidationError("companyNumber or companyName is required")
    return None


def _check_site_fetch(payload: Payload) -> Exception | None:
    missing = [key for key in ("host", "companyNumber", "companyName") if not _present(payload.get(key))]
    if missing:
        return PayloadValidationError(f"Missing required field(s): {', '.join(missing)}")
    return None


def _check_person_linkedin(payload: Payload) -> Exception | None:
    if _present(payload.get("personId")):
        return None

    person = payload.get("person")
    if isinstance(person, Mapping) and _present(person.get("firstName")) and _present(person.get("lastName")):
        return None

    return PayloadValidationError("personId or person.firstName and person.lastName are required")


def _check_owner_discovery(payload: Payload) -> Exception | None:
    address = payload.get("address")
    if not isinstance(address, Mapping) or not (_present(address.get("line1")) and _present(address.get("postcode"))):
        return PayloadValidationError("address.line1 and address.postcode are required")
    return None


# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
# Job keys
# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++


def ch_appointments_key(payload: Payload) -> str:
    first = str(payload.get("firstName") or "").lower()
    last = str(payload.get("lastName") or "").lower()
    return f"ch:{payload['companyNumber']}:{first}:{last}:{payload.get('contactId') or ''}"


def company_discovery_key(payload: Payload) -> str:
    return f"co:{payload.get('companyNumber') or payload.get('companyName')}"


def site_fetch_key(payload: Payload) -> str:
    return f"site:{payload['companyNumber']}:{str(payload['host']).lower()}"


def person_linkedin_key(payload: Payload) -> str:
    """person:<personId>, else the caller's own jobId, else a fresh generated ID."""

    if _present(payload.get("personId")):
        return f"person:{payload['personId']}"
    if _present(payload.get("jobId")):
        return str(payload["jobId"])
    return generate_job_id("person")


def owner_discovery_key(payload: Payload) -> str:
    return f"owner:{compute_address_key(payload['address'])}"


# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
# Registry
# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++


@dataclass
class StageSpec:
    """How one pipeline stage is keyed, validated, retried and run."""

    # the queue name, e.g. "company-discovery"
    name: str

    # the default task kind recorded as the job's name
    task: str

    # derive an idempotent job ID from a validated payload
    job_key: JobKey

    # TypedDict the payload must satisfy
    payload_type: type | None = None

    # base delay for exponential backoff between attempts
    backoff_seconds: float = 1.0

    attempts: int = constants.DEFAULT_ATTEMPTS

    # how many jobs of this stage may run at once per process
    concurrency: int = 1

    # whether a submission to this stage starts a new workflow
    is_root: bool = False

    # extra validation beyond the TypedDict shape
    precheck: Precheck | None = None

    _shape_check: Precheck = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._shape_check = create_typeddict_precheck(self.payload_type)

    def validate(self, payload: Any) -> None:
        """Raise PayloadValidationError if the payload is not acceptable for this stage."""

        err = self._shape_check(payload)
        if err is None and self.precheck is not None:
            err = self.precheck(payload)

        if isinstance(err, PayloadValidationError):
            raise err
        if err is not None:
            raise PayloadValidationError(str(err)) from err


class StageRegistry:
    """The known set of stages, in registration order."""

    def __init__(self, stages: list[StageSpec] | None = None) -> None:
        self._stages: dict[str, StageSpec] = {}
        for stage in stages or []:
            self.register(stage)

    def register(self, stage: StageSpec) -> StageSpec:
        if stage.name in self._stages:
            raise DuplicateStageError(f"Stage {stage.name} is already registered")

        log.debug(f"Registering stage {stage.name} (concurrency={stage.concurrency}, root={stage.is_root})")
        self._stages[stage.name] = stage
        return stage

    def get(self, name: str) -> StageSpec:
        try:
            return self._stages[name]
        except KeyError:
            raise UnknownStageError(f"Unknown stage {name!r}; known stages: {', '.join(self._stages)}") from None

    def names(self) -> list[str]:
        return list(self._stages)

    def root_stages(self) -> list[str]:
        return [name for name, stage in self._stages.items() if stage.is_root]

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def __iter__(self):
        return iter(self._stages.values())

    def __len__(self) -> int:
        return len(self._stages)


def default_stages(settings: Settings | None = None) -> StageRegistry:
    """The enrichment pipeline's five stages."""

    settings = settings or Settings()

    return StageRegistry(
        [
            StageSpec(
                name=constants.CH_APPOINTMENTS,
                task="fetch",
                job_key=ch_appointments_key,
                payload_type=ChAppointmentsPayload,
                backoff_seconds=1.0,
                concurrency=2,
                is_root=True,
                precheck=_check_ch_appointments,
            ),
            StageSpec(
                name=constants.COMPANY_DISCOVERY,
                task="discover",
                job_key=company_discovery_key,
                payload_type=CompanyDiscoveryPayload,
                backoff_seconds=1.5,
                concurrency=1,
                is_root=True,
                precheck=_check_company_discovery,
            ),
            StageSpec(
                name=constants.SITE_FETCH,
                task="fetch",
                job_key=site_fetch_key,
                payload_type=SiteFetchPayload,
                backoff_seconds=1.5,
                concurrency=1,
                precheck=_check_site_fetch,
            ),
            StageSpec(
                name=constants.PERSON_LINKEDIN,
                task="discover",
                job_key=person_linkedin_key,
                payload_type=PersonLinkedinPayload,
                backoff_seconds=2.0,
                concurrency=1,
                is_root=True,
                precheck=_check_person_linkedin,
            ),
            StageSpec(
                name=constants.OWNER_DISCOVERY,
                task="discover",
                job_key=owner_discovery_key,
                payload_type=OwnerDiscoveryPayload,
                backoff_seconds=2.0,
                concurrency=settings.owner_concurrency,
                is_root=True,
                precheck=_check_owner_discovery,
            ),
        ]
    )
