JOB_PROGRESS_TABLE_SCHEMA = """
create table if not exists job_progress (
    job_id                    text primary key,
    queue                     text not null,
    name                      text not null,
    status                    text not null,
    data                      text,
    root_job_id               text,
    created_at                text not null,
    updated_at                text not null
);
"""

JOB_EVENTS_TABLE_SCHEMA = """
create table if not exists job_events (
    id                        integer primary key autoincrement,
    job_id                    text not null,
    ts                        text not null,
    level                     text not null,
    message                   text not null,
    data                      text
);
"""

JOB_PROGRESS_ROOT_INDEX = """
create index if not exists idx_job_progress_root on job_progress(root_job_id);
"""

JOB_PROGRESS_UPDATED_INDEX = """
create index if not exists idx_job_progress_updated on job_progress(updated_at desc);
"""

JOB_EVENTS_JOB_INDEX = """
create index if not exists idx_job_events_job on job_events(job_id, ts, id);
"""

# Business records written by stage handlers. Only the columns that tie a record
# to its workflow matter here; cleanup walks them in foreign-key order.

CH_PEOPLE_TABLE_SCHEMA = """
create table if not exists ch_people (
    id                        integer primary key autoincrement,
    job_id                    text not null,
    root_job_id               text,
    person_key                text not null,
    contact_id                text,
    first_name                text,
    middle_names              text,
    last_name                 text,
    full_name                 text,
    nationality               text,
    dob_month                 integer,
    dob_year                  integer,
    dob_string                text,
    officer_ids               text,
    status                    text,
    created_at                text,
    updated_at                text,
    unique (job_id, person_key)
);
"""

CH_APPOINTMENTS_TABLE_SCHEMA = """
create table if not exists ch_appointments (
    id                        integer primary key autoincrement,
    person_id                 integer not null,
    appointment_id            text not null,
    company_number            text,
    company_name              text,
    company_status            text,
    registered_address        text,
    registered_postcode       text,
    verification              text,
    created_at                text,
    updated_at                text,
    unique (person_id, appointment_id),
    foreign key (person_id)   references ch_people(id)
);
"""

OWNER_PROPERTIES_TABLE_SCHEMA = """
create table if not exists owner_properties (
    id                        integer primary key autoincrement,
    job_id                    text not null unique,
    root_job_id               text,
    address_line1             text not null,
    address_line2             text,
    city                      text,
    postcode                  text not null,
    country                   text,
    status                    text,
    created_at                text,
    updated_at                text
);
"""

OWNER_CANDIDATES_TABLE_SCHEMA = """
create table if not exists owner_candidates (
    id                        integer primary key autoincrement,
    property_id               integer not null,
    full_name                 text not null,
    score                     real,
    rank                      integer,
    evidence                  text,
    foreign key (property_id) references owner_properties(id)
);
"""

OWNER_SIGNALS_TABLE_SCHEMA = """
create table if not exists owner_signals (
    id                        integer primary key autoincrement,
    candidate_id              integer not null,
    signal_id                 text not null,
    weight                    real,
    score                     real,
    reason                    text,
    foreign key (candidate_id) references owner_candidates(id)
);
"""

PROGRESS_SCHEMA = [
    JOB_PROGRESS_TABLE_SCHEMA,
    JOB_EVENTS_TABLE_SCHEMA,
    JOB_PROGRESS_ROOT_INDEX,
    JOB_PROGRESS_UPDATED_INDEX,
    JOB_EVENTS_JOB_INDEX,
]

BUSINESS_SCHEMA = [
    CH_PEOPLE_TABLE_SCHEMA,
    CH_APPOINTMENTS_TABLE_SCHEMA,
    OWNER_PROPERTIES_TABLE_SCHEMA,
    OWNER_CANDIDATES_TABLE_SCHEMA,
    OWNER_SIGNALS_TABLE_SCHEMA,
]
