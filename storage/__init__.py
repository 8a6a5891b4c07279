from .schema import (
    PHASES,
    QUESTIONNAIRE_SECTIONS,
    DEMOGRAPHIC_FIELDS,
    RESULT_DTYPES,
    ParticipantIn,
    DemographicIn,
    TrialResultIn,
    QuestionnaireIn,
)
from .store import (
    Database,
    StorageError,
    UnknownParticipantError,
    results_frame,
    export_parquet,
    export_ndjson,
)

__all__ = [
    "PHASES",
    "QUESTIONNAIRE_SECTIONS",
    "DEMOGRAPHIC_FIELDS",
    "RESULT_DTYPES",
    "ParticipantIn",
    "DemographicIn",
    "TrialResultIn",
    "QuestionnaireIn",
    "Database",
    "StorageError",
    "UnknownParticipantError",
    "results_frame",
    "export_parquet",
    "export_ndjson",
]
