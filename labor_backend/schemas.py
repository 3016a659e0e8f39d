"""
Pydantic schemas for the lab backend API.

Field names follow the JSON the front end already sends and reads.
"""

from __future__ import annotations

from typing import Optional, Union

from pydantic import BaseModel, Field

Number = Union[int, float]


class MessageResponse(BaseModel):
    message: str


class AssignmentResponse(BaseModel):
    fragen: list[str]


class NextQuestionResponse(BaseModel):
    frage: Optional[str] = None
    done: Optional[bool] = None


class SubmitAnswerRequest(BaseModel):
    userId: str = Field(..., min_length=1, max_length=64)
    raum: str = Field(..., min_length=1, max_length=128)
    auswahl: str = Field(..., max_length=1024)


class SubmitAnswerResponse(BaseModel):
    message: str
    punkte: int


class PointsResponse(BaseModel):
    punkte: int


class AnsweredQuestionSchema(BaseModel):
    raum: str
    frage: str
    gegebeneAntwort: str
    richtigeAntwort: str
    punkte: int


class AnsweredQuestionsResponse(BaseModel):
    fragen: list[AnsweredQuestionSchema]


class QuizResultsResponse(BaseModel):
    ergebnisse: list[AnsweredQuestionSchema]
    gesamtPunkte: int


class QuizDataResponse(BaseModel):
    punkte: int
    beantworteteFragen: list[AnsweredQuestionSchema]


class UploadReportResponse(BaseModel):
    message: str
    url: str


class StoreResultsRequest(BaseModel):
    userId: str = Field(..., min_length=1, max_length=64)
    punkte: Number
    optimalerBitumengehalt: Number
    maximaleRaumdichte: Number
