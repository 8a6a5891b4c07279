from __future__ import annotations

"""Schema constants and Pydantic request models for the relational store.

Every request model forbids unknown fields: a body is mapped onto named
columns explicitly, never merged into the column set.
"""

from typing import Dict, List, Literal, Tuple

import pandas as pd
from pandas.api.types import CategoricalDtype
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# --- Constants ---

PHASES = {"Practice", "Main"}
MAX_SELECTIONS = 5

# section key -> (number of questions, scale maximum); answers run 1..max
QUESTIONNAIRE_SECTIONS: Dict[str, Tuple[int, int]] = {
    "section1": (9, 5),
    "section2": (37, 5),
    "section3": (14, 7),
    "section4": (29, 5),
}

DEMOGRAPHIC_FIELDS = [
    "gender",
    "age",
    "education",
    "year",
    "marital_status",
    "employment_status",
    "living_with",
    "longest_residence",
    "current_social_status",
    "childhood_social_status",
    "monthly_income",
]

RESULT_DTYPES = {
    "id": "Int64",
    "participant_id": "Int64",
    "task_type": CategoricalDtype(categories=sorted(PHASES), ordered=False),
    "group_index": "UInt16",
    "selected_words": "string",
    "n_selected": "UInt8",
    "is_time_up": "boolean",
    "created_at": pd.DatetimeTZDtype(tz="UTC"),
}


# --- Pydantic models ---

class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class ParticipantIn(_Strict):
    school: str = Field(min_length=1)
    student_number: str = Field(min_length=1)
    course: str = Field(min_length=1)


class DemographicIn(_Strict):
    gender: str = Field(min_length=1)
    age: str = Field(min_length=1)
    education: str = Field(min_length=1)
    year: str = Field(min_length=1)
    marital_status: str = Field(min_length=1)
    employment_status: str = Field(min_length=1)
    living_with: List[str] = Field(default_factory=list)
    longest_residence: str = Field(min_length=1)
    current_social_status: str = Field(min_length=1)
    childhood_social_status: str = Field(min_length=1)
    monthly_income: str = Field(min_length=1)


class TrialResultIn(_Strict):
    participant_id: int = Field(gt=0)
    task_type: Literal["Practice", "Main"]
    group_index: int = Field(ge=0)
    selected_words: List[str] = Field(max_length=MAX_SELECTIONS)
    is_time_up: bool = False

    @field_validator("selected_words")
    @classmethod
    def _no_duplicates(cls, v: List[str]) -> List[str]:
        if len(set(v)) != len(v):
            raise ValueError("selected_words must not contain duplicates")
        return v


class QuestionnaireIn(_Strict):
    section1: List[int]
    section2: List[int]
    section3: List[int]
    section4: List[int]

    @model_validator(mode="after")
    def _complete_and_in_range(self) -> "QuestionnaireIn":
        for key, (n_questions, scale_max) in QUESTIONNAIRE_SECTIONS.items():
            answers = getattr(self, key)
            if len(answers) != n_questions:
                raise ValueError(f"{key} needs {n_questions} answers, got {len(answers)}")
            for pos, value in enumerate(answers, start=1):
                if not 1 <= value <= scale_max:
                    raise ValueError(f"{key}.{pos} must be in 1..{scale_max}, got {value}")
        return self

    def answers_by_key(self) -> Dict[str, int]:
        """Flatten to {"section2.14": 3, ...} question keys."""
        out: Dict[str, int] = {}
        for key in QUESTIONNAIRE_SECTIONS:
            for pos, value in enumerate(getattr(self, key), start=1):
                out[f"{key}.{pos}"] = int(value)
        return out

    @classmethod
    def from_answers_by_key(cls, answers: Dict[str, int]) -> "QuestionnaireIn":
        sections: Dict[str, List[int]] = {}
        for key, (n_questions, _scale_max) in QUESTIONNAIRE_SECTIONS.items():
            sections[key] = [answers[f"{key}.{pos}"] for pos in range(1, n_questions + 1) if f"{key}.{pos}" in answers]
        unknown = set(answers) - {f"{k}.{p}" for k, (n, _m) in QUESTIONNAIRE_SECTIONS.items() for p in range(1, n + 1)}
        if unknown:
            raise ValueError(f"Unknown question keys: {sorted(unknown)}")
        return cls(**sections)
