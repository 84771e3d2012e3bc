# questions.py - AAC Forms
# Dynamic question engine: type mapping, render plan, answer scratch space,
# required-answer validation, answer collection and rehydration.

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

log = logging.getLogger(__name__)

SHORT_TEXT = "short_text"
LONG_TEXT = "long_text"
SINGLE_SELECT = "single_select"
MULTIPLE_SELECT = "multiple_select"
COMPOSITE = "composite"

QUESTION_TYPES = (SHORT_TEXT, LONG_TEXT, SINGLE_SELECT, MULTIPLE_SELECT, COMPOSITE)
SELECT_TYPES = (SINGLE_SELECT, MULTIPLE_SELECT)

_TYPE_MAP = {
    "text": SHORT_TEXT,
    "short_text": SHORT_TEXT,
    "date": SHORT_TEXT,
    "long_text": LONG_TEXT,
    "boolean": SINGLE_SELECT,
    "rating": SINGLE_SELECT,
    "single_select": SINGLE_SELECT,
    "composite": COMPOSITE,
}
_MULTI_DB_TYPES = ("multiple_choice", "multi_select")
_SUB_SELECT_DB_TYPES = ("single_select", "multiple_choice", "multi_select", "boolean", "rating")
_SUB_LABEL_KEYS = ("question", "text", "question_text")
_SUB_TYPE_KEYS = ("type", "question_type")

MULTI_SEPARATOR = ","


class FormValidationError(ValueError):
    def __init__(self, missing: Sequence[str]):
        self.missing = list(missing)
        bullets = "\n".join(f"• {m}" for m in self.missing)
        super().__init__(f"Please answer all required questions:\n\n{bullets}")


# -------------------------------------------------
# Parsing
# -------------------------------------------------

def parse_json_list(value: Any, field_name: str = "value") -> List[Any]:
    """
    Columns like options/sub_questions arrive either as JSON arrays or as
    JSON-encoded strings. Anything unusable collapses to [].
    """
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            log.warning("Failed to parse %s: %r", field_name, value)
            return []
        return parsed if isinstance(parsed, list) else []
    return []


def option_text(option: Any) -> str:
    if isinstance(option, bool):
        return "true" if option else "false"
    if isinstance(option, str):
        return option
    return str(option)


def map_question_type(db_type: Optional[str], options: Any = None) -> str:
    t = (db_type or "").strip().lower()
    if t in _MULTI_DB_TYPES:
        opts = options if isinstance(options, list) else parse_json_list(options, "options")
        return MULTIPLE_SELECT if len(opts) > 1 else SINGLE_SELECT
    mapped = _TYPE_MAP.get(t)
    if mapped is None:
        log.warning("Unknown question type %r, defaulting to %s", db_type, SHORT_TEXT)
        return SHORT_TEXT
    return mapped


def sub_key(question_id: str, index: int) -> str:
    return f"{question_id}_sub_{index}"


# -------------------------------------------------
# Render plan
# -------------------------------------------------

@dataclass
class SubQuestion:
    index: int
    key: str
    label: str
    answer_key: str
    type: str
    raw_type: str
    options: List[str] = field(default_factory=list)

    @property
    def display_label(self) -> str:
        return self.label or f"Sub-question {self.index + 1}"


@dataclass
class RenderedQuestion:
    id: str
    number: int
    text: str
    type: str
    raw_type: str
    required: bool = False
    options: List[str] = field(default_factory=list)
    sub_questions: List[SubQuestion] = field(default_factory=list)

    @property
    def has_sub_questions(self) -> bool:
        return self.type == COMPOSITE and bool(self.sub_questions)

    @property
    def input_keys(self) -> List[str]:
        if self.has_sub_questions:
            return [s.key for s in self.sub_questions]
        return [self.id]

    def input_type(self, key: str) -> str:
        """Widget type behind one input key (sub-questions carry their own)."""
        for s in self.sub_questions:
            if s.key == key:
                return s.type
        if self.type == COMPOSITE:
            return SHORT_TEXT
        return self.type

    def options_for(self, key: str) -> List[str]:
        for s in self.sub_questions:
            if s.key == key:
                return s.options
        return self.options


def _first_present(data: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for k in keys:
        v = data.get(k)
        if v not in (None, ""):
            return v
    return None


def _build_sub_questions(question_id: str, raw: Any) -> List[SubQuestion]:
    items = parse_json_list(raw, "sub_questions")
    out: List[SubQuestion] = []
    seen_answer_keys = set()
    for idx, item in enumerate(items):
        data = item if isinstance(item, dict) else {}
        raw_type = str(_first_present(data, _SUB_TYPE_KEYS) or "text").strip().lower()
        label_val = _first_present(data, _SUB_LABEL_KEYS)
        label = str(label_val).strip() if label_val is not None else ""
        options = [option_text(o) for o in parse_json_list(data.get("options"), "sub_question options")]
        if raw_type in _SUB_SELECT_DB_TYPES and options:
            sub_type = SINGLE_SELECT
        elif raw_type == "long_text":
            sub_type = LONG_TEXT
        else:
            sub_type = SHORT_TEXT
        answer_key = label or f"sub_{idx}"
        if answer_key in seen_answer_keys:
            answer_key = f"sub_{idx}"
        seen_answer_keys.add(answer_key)
        out.append(
            SubQuestion(
                index=idx,
                key=sub_key(question_id, idx),
                label=label,
                answer_key=answer_key,
                type=sub_type,
                raw_type=raw_type,
                options=options,
            )
        )
    return out


def _order_value(q: Mapping[str, Any]) -> float:
    try:
        return float(q.get("order_index") or 0)
    except (TypeError, ValueError):
        return 0.0


def build_form(questions: Iterable[Mapping[str, Any]]) -> List[RenderedQuestion]:
    rows = sorted((q for q in questions or [] if q), key=_order_value)
    built: List[RenderedQuestion] = []
    for number, q in enumerate(rows, start=1):
        qid = str(q.get("id"))
        options = [option_text(o) for o in parse_json_list(q.get("options"), "options")]
        qtype = map_question_type(q.get("question_type"), options)
        subs = _build_sub_questions(qid, q.get("sub_questions")) if qtype == COMPOSITE else []
        built.append(
            RenderedQuestion(
                id=qid,
                number=number,
                text=(q.get("question_text") or "").strip(),
                type=qtype,
                raw_type=str(q.get("question_type") or ""),
                required=bool(q.get("is_required")),
                options=options,
                sub_questions=subs,
            )
        )
        log.debug("Question %s: %r -> %s (%d options, %d sub-questions)", qid, q.get("question_type"), qtype, len(options), len(subs))
    return built


QuestionsArg = Union[Sequence[RenderedQuestion], Sequence[Mapping[str, Any]]]


def ensure_built(questions: QuestionsArg) -> List[RenderedQuestion]:
    items = list(questions or [])
    if items and not isinstance(items[0], RenderedQuestion):
        return build_form(items)
    return items


# -------------------------------------------------
# Answer scratch space
# -------------------------------------------------

class AnswerStore:
    """
    Flat key/value answers for one form fill, keyed by question id
    (or <question_id>_sub_<n> for composite parts). Multiple-select
    answers are kept comma-joined, the way they are stored remotely.
    """

    def __init__(self, initial: Optional[Mapping[str, Any]] = None):
        self._values: Dict[str, str] = {}
        for k, v in (initial or {}).items():
            self.set(k, v)

    def get(self, key: str, default: str = "") -> str:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = "" if value is None else str(value)

    def select(self, key: str, option: str) -> None:
        self.set(key, option)

    def selected(self, key: str) -> List[str]:
        return [s for s in self.get(key).split(MULTI_SEPARATOR) if s]

    def is_selected(self, key: str, option: str, multiple: bool = False) -> bool:
        if multiple:
            return option in self.selected(key)
        return self.get(key) == option

    def toggle(self, key: str, option: str) -> List[str]:
        current = self.selected(key)
        if option in current:
            current = [c for c in current if c != option]
        else:
            current.append(option)
        self.set(key, MULTI_SEPARATOR.join(current))
        return current

    def clear(self) -> None:
        self._values.clear()

    def as_dict(self) -> Dict[str, str]:
        return dict(self._values)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)

    @classmethod
    def from_form_data(cls, form: Any, questions: QuestionsArg) -> "AnswerStore":
        store = cls()
        getlist = getattr(form, "getlist", None)
        for q in ensure_built(questions):
            for key in q.input_keys:
                kind = q.input_type(key)
                allowed = q.options_for(key)
                if kind == MULTIPLE_SELECT:
                    picked = getlist(key) if getlist else form.get(key) or []
                    if isinstance(picked, str):
                        picked = [picked]
                    picked = [p for p in picked if p in allowed]
                    store.set(key, MULTI_SEPARATOR.join(dict.fromkeys(picked)))
                elif kind == SINGLE_SELECT:
                    value = form.get(key) or ""
                    store.set(key, value if value in allowed else "")
                else:
                    store.set(key, form.get(key) or "")
        return store


# -------------------------------------------------
# Validation + collection
# -------------------------------------------------

def find_missing_required(questions: QuestionsArg, store: AnswerStore) -> List[str]:
    missing: List[str] = []
    for q in ensure_built(questions):
        if not q.required:
            continue
        if q.has_sub_questions:
            # Only the parts are answerable; the parent key never holds a value.
            for sub in q.sub_questions:
                if not store.get(sub.key).strip():
                    missing.append(f"{q.text} - {sub.display_label}")
        elif not store.get(q.id).strip():
            missing.append(q.text)
    return missing


def validate_answers(questions: QuestionsArg, store: AnswerStore) -> None:
    missing = find_missing_required(questions, store)
    if missing:
        log.info("Validation failed, %d required answers missing", len(missing))
        raise FormValidationError(missing)


def collect_answers(questions: QuestionsArg, store: AnswerStore) -> Dict[str, Any]:
    answers: Dict[str, Any] = {}
    for q in ensure_built(questions):
        if q.has_sub_questions:
            parts = {}
            for sub in q.sub_questions:
                value = store.get(sub.key)
                if value:
                    parts[sub.answer_key] = value
            if parts:
                answers[q.id] = parts
        else:
            value = store.get(q.id)
            if value:
                answers[q.id] = value
    return answers


def _answer_text(value: Any) -> str:
    if isinstance(value, list):
        return MULTI_SEPARATOR.join(option_text(v) for v in value)
    return option_text(value)


def restore_answers(
    questions: QuestionsArg,
    stored: Union[Mapping[str, Any], Iterable[Mapping[str, Any]]],
    store: AnswerStore,
) -> AnswerStore:
    """
    Loads previously submitted answers (answer rows or a {question_id: answer}
    mapping) back into the scratch space for read-only review.
    """
    if isinstance(stored, Mapping):
        pairs = list(stored.items())
    else:
        pairs = [(r.get("question_id"), r.get("answer")) for r in stored or []]
    by_id = {q.id: q for q in ensure_built(questions)}
    for qid, answer in pairs:
        if qid is None or answer is None:
            continue
        qid = str(qid)
        if isinstance(answer, dict):
            q = by_id.get(qid)
            by_answer_key = {s.answer_key: s for s in (q.sub_questions if q else [])}
            for pos, (k, v) in enumerate(answer.items()):
                sub = by_answer_key.get(k)
                store.set(sub.key if sub else sub_key(qid, pos), _answer_text(v))
        else:
            store.set(qid, _answer_text(answer))
    return store
