# submissions.py - AAC Forms
# Form submission (self + teammate co-submission) and submitted-answer review

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from assignments import AssignedForm
from db import BackendError, Connection, Query, get_conn, unique
from questions import AnswerStore, QuestionsArg, collect_answers, ensure_built, restore_answers, validate_answers

log = logging.getLogger(__name__)


class SubmissionError(ValueError):
    pass


@dataclass
class TeammateOutcome:
    user_id: str
    ok: bool
    response_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SubmissionResult:
    response_id: str
    answers: Dict[str, Any]
    teammates: List[TeammateOutcome] = field(default_factory=list)

    @property
    def answer_count(self) -> int:
        return len(self.answers)

    @property
    def failed_teammates(self) -> List[TeammateOutcome]:
        return [t for t in self.teammates if not t.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "response_id": self.response_id,
            "answer_count": self.answer_count,
            "teammates": [t.__dict__ for t in self.teammates],
        }


def _stamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now(timezone.utc)).isoformat(timespec="seconds")


def teammate_confirmation(count: int) -> str:
    plural = "s" if count > 1 else ""
    return (
        f"You are about to submit this form for yourself and {count} teammate{plural}. "
        "Do you want to continue?"
    )


def _insert_response(
    conn: Connection,
    form_id: str,
    respondent_id: str,
    answers: Dict[str, Any],
    total_questions: int,
    stamp: str,
    submitted_by: Optional[str] = None,
) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        "total_questions": total_questions,
        "answered_questions": len(answers),
    }
    if submitted_by:
        # who actually filled it out
        metadata["submitted_by"] = submitted_by
    return (
        conn.table("form_responses")
        .insert(
            {
                "form_id": form_id,
                "respondent_id": respondent_id,
                "status": "submitted",
                "started_at": stamp,
                "submitted_at": stamp,
                "metadata": metadata,
            }
        )
        .select("*")
        .single()
        .execute()
    )


def _insert_answers(conn: Connection, response_id: str, answers: Dict[str, Any]) -> None:
    rows = [
        {"response_id": response_id, "question_id": qid, "answer": answer}
        for qid, answer in answers.items()
    ]
    if rows:
        conn.table("form_response_answers").insert(rows).execute()


def _complete(query: Query, stamp: str) -> Query:
    return query.update({"status": "completed", "completed_at": stamp, "updated_at": stamp})


def submit_form(
    assignment: AssignedForm,
    questions: QuestionsArg,
    store: AnswerStore,
    submitter_id: str,
    teammate_ids: Iterable[str] = (),
    now: Optional[datetime] = None,
) -> SubmissionResult:
    if assignment.is_completed:
        raise SubmissionError("This form has already been submitted and is read-only.")
    if not submitter_id:
        raise SubmissionError("User not authenticated")

    built = ensure_built(questions)
    validate_answers(built, store)
    answers = collect_answers(built, store)
    log.info("Submitting assignment %s with %d answers", assignment.id, len(answers))

    stamp = _stamp(now)
    form_id = assignment.form_id
    with get_conn() as conn:
        try:
            response = _insert_response(conn, form_id, submitter_id, answers, len(built), stamp)
        except BackendError as e:
            raise SubmissionError(f"Failed to save form response: {e.message}") from e
        try:
            _insert_answers(conn, response["id"], answers)
        except BackendError as e:
            raise SubmissionError(f"Failed to save form answers: {e.message}") from e
        try:
            _complete(conn.table("form_assignments"), stamp).eq("id", assignment.id).execute()
        except BackendError as e:
            raise SubmissionError(f"Failed to update assignment status: {e.message}") from e

        result = SubmissionResult(response_id=response["id"], answers=answers)
        for teammate_id in unique(t for t in teammate_ids if t and t != submitter_id):
            try:
                mate_response = _insert_response(
                    conn, form_id, teammate_id, answers, len(built), stamp, submitted_by=submitter_id
                )
                _insert_answers(conn, mate_response["id"], answers)
                (
                    _complete(conn.table("form_assignments"), stamp)
                    .eq("form_id", form_id)
                    .eq("employee_id", teammate_id)
                    .execute()
                )
            except BackendError as e:
                # One teammate failing must not block the others.
                log.error("Teammate submission failed for %s: %s", teammate_id, e.message)
                result.teammates.append(TeammateOutcome(teammate_id, False, error=e.message))
                continue
            result.teammates.append(TeammateOutcome(teammate_id, True, response_id=mate_response["id"]))

    if result.teammates:
        log.info(
            "Teammate submissions processed: %d ok, %d failed",
            len(result.teammates) - len(result.failed_teammates),
            len(result.failed_teammates),
        )
    return result


# -------------------------------------------------
# Review
# -------------------------------------------------

def fetch_form_response(form_id: str, respondent_id: str) -> Optional[Dict[str, Any]]:
    with get_conn() as conn:
        responses = (
            conn.table("form_responses")
            .select("*")
            .eq("form_id", form_id)
            .eq("respondent_id", respondent_id)
            .eq("status", "submitted")
            .order("submitted_at", desc=True)
            .limit(1)
            .execute()
        )
        if not responses:
            log.info("No submitted response for form %s / %s", form_id, respondent_id)
            return None
        response = responses[0]
        answers = (
            conn.table("form_response_answers").select("*").eq("response_id", response["id"]).execute()
        )
    return {"response": response, "answers": answers or []}


def load_submitted_answers(assignment: AssignedForm, store: AnswerStore) -> bool:
    try:
        found = fetch_form_response(assignment.form_id, assignment.employee_id)
    except BackendError as e:
        # Review still renders, just without prior answers.
        log.error("Error loading submitted answers for %s: %s", assignment.id, e.message)
        return False
    if not found:
        return False
    restore_answers(assignment.questions, found["answers"], store)
    log.debug("Loaded %d submitted answers into review store", len(found["answers"]))
    return True
