"""
HTTP routes for the lab backend API.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, TypeVar

from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile

from labor_backend.config import get_settings
from labor_backend.dependencies import (
    get_lab_result_service,
    get_quiz_service,
    get_report_service,
)
from labor_backend.errors import InvalidInputError, StorageError, StorageTimeoutError
from labor_backend.quiz import QuizService
from labor_backend.reports import ReportService
from labor_backend.results import LabResultService
from labor_backend.schemas import (
    AnsweredQuestionsResponse,
    AssignmentResponse,
    MessageResponse,
    NextQuestionResponse,
    PointsResponse,
    QuizDataResponse,
    QuizResultsResponse,
    StoreResultsRequest,
    SubmitAnswerRequest,
    SubmitAnswerResponse,
    UploadReportResponse,
)
from labor_backend.timeouts import call_with_timeout

logger = logging.getLogger(__name__)

router = APIRouter()

T = TypeVar("T")


def _storage_call(
    error_message: str, fn: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """
    Run a service call under the storage deadline and map its errors to HTTP.
    """
    timeout = get_settings().storage_timeout_seconds
    try:
        return call_with_timeout(fn, *args, timeout=timeout, **kwargs)
    except InvalidInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except StorageTimeoutError as exc:
        logger.error(f"{error_message}: {exc}")
        raise HTTPException(
            status_code=500, detail=f"{error_message} (Zeitüberschreitung)"
        )
    except StorageError as exc:
        logger.error(f"{error_message}: {exc}")
        raise HTTPException(status_code=500, detail=error_message)


@router.get("/data/{user_id}", response_model=QuizDataResponse)
def get_quiz_data(user_id: str, quiz: QuizService = Depends(get_quiz_service)):
    logger.info(f"Fetching quiz data for {user_id}")
    state = _storage_call(
        "Fehler beim Abrufen der Daten", quiz.get_raw_state, user_id
    )
    if state is None:
        raise HTTPException(status_code=404, detail="Keine Daten gefunden")
    return state.as_dict()


@router.get("/quizfragen/{user_id}", response_model=AssignmentResponse)
def get_quiz_questions(user_id: str, quiz: QuizService = Depends(get_quiz_service)):
    keys = _storage_call(
        "Fehler beim Abrufen der Fragen", quiz.get_assignment, user_id
    )
    return AssignmentResponse(fragen=keys)


@router.get(
    "/quiz/start/{user_id}",
    response_model=NextQuestionResponse,
    response_model_exclude_none=True,
)
def start_quiz(user_id: str, quiz: QuizService = Depends(get_quiz_service)):
    key = _storage_call(
        "Fehler beim Abrufen der nächsten Frage", quiz.next_question, user_id
    )
    if key is None:
        return NextQuestionResponse(done=True)
    return NextQuestionResponse(frage=key)


@router.post("/quiz", response_model=SubmitAnswerResponse)
def submit_answer(
    payload: SubmitAnswerRequest, quiz: QuizService = Depends(get_quiz_service)
):
    result = _storage_call(
        "Fehler beim Speichern der Quiz-Daten",
        quiz.submit_answer,
        payload.userId,
        payload.raum,
        payload.auswahl,
    )
    message = (
        "Quiz-Daten gespeichert!" if result.accepted else "Frage bereits beantwortet"
    )
    return SubmitAnswerResponse(message=message, punkte=result.total_points)


@router.get("/punkte/{user_id}", response_model=PointsResponse)
def get_points(user_id: str, quiz: QuizService = Depends(get_quiz_service)):
    points = _storage_call(
        "Fehler beim Abrufen der Punkte", quiz.get_points, user_id
    )
    return PointsResponse(punkte=points)


@router.get("/beantworteteFragen/{user_id}", response_model=AnsweredQuestionsResponse)
def get_answered_questions(
    user_id: str, quiz: QuizService = Depends(get_quiz_service)
):
    answers = _storage_call(
        "Fehler beim Abrufen der beantworteten Fragen", quiz.get_answered, user_id
    )
    return AnsweredQuestionsResponse(fragen=[answer.as_dict() for answer in answers])


@router.get("/quizErgebnisse/{user_id}", response_model=QuizResultsResponse)
def get_quiz_results(user_id: str, quiz: QuizService = Depends(get_quiz_service)):
    state = _storage_call(
        "Fehler beim Abrufen der Quiz-Ergebnisse", quiz.get_state, user_id
    )
    return QuizResultsResponse(
        ergebnisse=[answer.as_dict() for answer in state.answers],
        gesamtPunkte=state.total_points,
    )


@router.post("/uploadPDF", response_model=UploadReportResponse)
def upload_pdf(
    pdf: Optional[UploadFile] = File(None),
    userId: Optional[str] = Form(None),
    reports: ReportService = Depends(get_report_service),
):
    if pdf is None:
        logger.error("Upload request without PDF")
        raise HTTPException(status_code=400, detail="Kein PDF gefunden")
    if not userId:
        raise HTTPException(status_code=400, detail="Fehlende Daten")

    max_bytes = get_settings().max_upload_bytes
    data = pdf.file.read(max_bytes + 1)
    if len(data) > max_bytes:
        logger.error(f"Rejected PDF upload for {userId}: larger than {max_bytes} bytes")
        raise HTTPException(status_code=400, detail="PDF zu groß")
    result = _storage_call(
        "Fehler beim Speichern des PDFs", reports.upload, userId, data
    )
    message = "PDF gespeichert" if result.created else "PDF bereits gespeichert"
    return UploadReportResponse(message=message, url=result.url)


@router.post("/storeResults", response_model=MessageResponse)
def store_results(
    payload: StoreResultsRequest,
    results: LabResultService = Depends(get_lab_result_service),
):
    result = _storage_call(
        "Fehler beim Speichern",
        results.save_result,
        payload.userId,
        payload.punkte,
        payload.optimalerBitumengehalt,
        payload.maximaleRaumdichte,
    )
    # Best effort with its own deadline; never raises.
    results.export_result(result)
    return MessageResponse(message="Ergebnisse gespeichert")


@router.get("/export/csv")
def export_csv(results: LabResultService = Depends(get_lab_result_service)):
    content = _storage_call("Fehler beim Erstellen der CSV", results.render_export)
    return Response(content=content, media_type="text/csv")
