"""
Lesson content models.

A Lesson is read-only input loaded once per session. Question items are
immutable once drawn; pools are tagged with their source category on load.

Lesson JSON uses camelCase keys, so every field accepts both spellings.
"""
import hashlib
import json
import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


LETTERS = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"

# "A.", "(b)", "C)", "d -" style labels in front of option text
OPTION_LABEL_PATTERN = re.compile(r"^\s*\(?[A-Z]\)?\s*[\.:\)\-]\s*", re.IGNORECASE)


def strip_option_label(text: str) -> str:
    """Remove a leading letter label from an option string."""
    return OPTION_LABEL_PATTERN.sub("", str(text or "")).strip()


class QuestionCategory(str, Enum):
    """Source category of a question item."""
    SAMPLE = "sample"
    WORD_PROBLEM = "word_problem"
    TRUE_FALSE = "true_false"
    MULTIPLE_CHOICE = "multiple_choice"
    FILL_IN_BLANK = "fill_in_blank"
    SHORT_ANSWER = "short_answer"


class QuestionItem(BaseModel):
    """
    One askable question.
    
    Accepted answers come from `answer` (primary) plus `expected_any`
    (explicit acceptable set); multiple-choice items may instead give a
    numeric `correct_index` into `options`.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)
    
    prompt: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("prompt", "question", "q", "Q"),
        description="Question text shown and spoken to the learner",
    )
    answer: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("answer", "expected", "a", "A"),
        description="Primary accepted answer",
    )
    expected_any: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("expected_any", "expectedAny", "acceptable"),
        description="Additional accepted answers (synonyms)",
    )
    options: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("options", "choices"),
        description="Multiple-choice option texts",
    )
    correct_index: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("correct_index", "correct", "correctIndex"),
        description="Index of the correct option",
    )
    keywords: List[str] = Field(default_factory=list, description="Short-answer keywords")
    min_keywords: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("min_keywords", "minKeywords"),
        description="Keywords required for a short-answer match",
    )
    category: QuestionCategory = Field(default=QuestionCategory.SAMPLE, description="Source pool")
    
    @model_validator(mode="before")
    @classmethod
    def _coerce_answer_schema(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        answer_key = next((k for k in ("answer", "expected", "a", "A") if k in data), None)
        options = data.get("options") or data.get("choices") or []
        if answer_key is not None:
            raw = data[answer_key]
            # Numeric answer on an options item is an index, not a value
            if isinstance(raw, int) and not isinstance(raw, bool) and options:
                data.setdefault("correct_index", raw)
                data.pop(answer_key)
            elif isinstance(raw, bool):
                data[answer_key] = "true" if raw else "false"
            elif raw is not None:
                data[answer_key] = str(raw)
        for key in ("expected_any", "expectedAny", "acceptable"):
            if key in data and data[key] is not None:
                data[key] = [str(v) for v in data[key] if v is not None and str(v).strip()]
        return data
    
    @property
    def prompt_key(self) -> str:
        """Identity used to detect duplicate prompts."""
        return self.prompt.strip().lower()
    
    @property
    def valid_options(self) -> List[str]:
        return [o for o in self.options if str(o).strip()]
    
    @property
    def is_multiple_choice(self) -> bool:
        return len(self.valid_options) >= 2
    
    @property
    def is_true_false(self) -> bool:
        return self.category == QuestionCategory.TRUE_FALSE
    
    @property
    def is_fill_in_blank(self) -> bool:
        return self.category == QuestionCategory.FILL_IN_BLANK
    
    @property
    def is_short_answer(self) -> bool:
        if self.category == QuestionCategory.SHORT_ANSWER:
            return True
        return bool(self.keywords) and not (self.is_multiple_choice or self.is_true_false)
    
    @property
    def effective_min_keywords(self) -> int:
        if self.min_keywords is not None:
            return max(0, self.min_keywords)
        return 1 if self.keywords else 0
    
    def option_text(self, index: int) -> str:
        """Cleaned option text at index, or empty string."""
        if index is None or index < 0 or index >= len(self.options):
            return ""
        return strip_option_label(self.options[index])
    
    def letter_for(self, index: int) -> Optional[str]:
        if index is None or index < 0 or index >= len(LETTERS):
            return None
        return LETTERS[index]
    
    def correct_option_index(self) -> Optional[int]:
        """Resolve the correct option from the index or by matching answer text."""
        if not self.is_multiple_choice:
            return None
        if self.correct_index is not None and 0 <= self.correct_index < len(self.options):
            return self.correct_index
        candidates = [c for c in [self.answer, *self.expected_any] if c]
        for candidate in candidates:
            cleaned = strip_option_label(candidate).lower()
            bare = candidate.strip().upper()
            for idx in range(len(self.options)):
                if self.option_text(idx).lower() == cleaned:
                    return idx
                if len(bare) == 1 and self.letter_for(idx) == bare:
                    return idx
        return None
    
    @property
    def primary_answer(self) -> str:
        """Single answer used for display and in directives."""
        if self.answer:
            return self.answer
        if self.expected_any:
            return self.expected_any[0]
        idx = self.correct_option_index()
        if idx is not None:
            return self.option_text(idx)
        return ""
    
    def with_category(self, category: QuestionCategory) -> "QuestionItem":
        return self.model_copy(update={"category": category})


class VocabEntry(BaseModel):
    """A vocabulary term taught in the definitions stage."""
    term: str = Field(..., min_length=1)
    definition: Optional[str] = Field(default=None)
    
    def describe(self) -> str:
        return f"{self.term}: {self.definition}" if self.definition else self.term


# Pool field name -> category of the items in it
POOL_CATEGORIES: Dict[str, QuestionCategory] = {
    "sample": QuestionCategory.SAMPLE,
    "word_problems": QuestionCategory.WORD_PROBLEM,
    "true_false": QuestionCategory.TRUE_FALSE,
    "multiple_choice": QuestionCategory.MULTIPLE_CHOICE,
    "fill_in_blank": QuestionCategory.FILL_IN_BLANK,
    "short_answer": QuestionCategory.SHORT_ANSWER,
}

_POOL_ALIASES: Dict[str, tuple] = {
    "sample": ("sample", "samples"),
    "word_problems": ("word_problems", "wordProblems"),
    "true_false": ("true_false", "trueFalse", "truefalse"),
    "multiple_choice": ("multiple_choice", "multipleChoice", "mc"),
    "fill_in_blank": ("fill_in_blank", "fillInTheBlank", "fillInBlank", "fib"),
    "short_answer": ("short_answer", "shortAnswer", "sa"),
}


class Lesson(BaseModel):
    """
    Read-only lesson document fetched once per session.
    
    Items in each pool are re-tagged with that pool's category.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)
    
    title: str = Field(default="", description="Lesson title")
    subject: Optional[str] = Field(default=None, description="Subject, e.g. math or science")
    grade: Optional[str] = Field(default=None, description="Grade label")
    difficulty: Optional[str] = Field(default=None, description="beginner, intermediate or advanced")
    teaching_notes: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("teaching_notes", "teachingNotes"),
    )
    vocabulary: List[VocabEntry] = Field(
        default_factory=list,
        validation_alias=AliasChoices("vocabulary", "vocab"),
    )
    sample: List[QuestionItem] = Field(default_factory=list)
    word_problems: List[QuestionItem] = Field(default_factory=list)
    true_false: List[QuestionItem] = Field(default_factory=list)
    multiple_choice: List[QuestionItem] = Field(default_factory=list)
    fill_in_blank: List[QuestionItem] = Field(default_factory=list)
    short_answer: List[QuestionItem] = Field(default_factory=list)
    
    @model_validator(mode="before")
    @classmethod
    def _tag_pools(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for field_name, aliases in _POOL_ALIASES.items():
            raw = None
            for alias in aliases:
                if alias in data:
                    raw = data.pop(alias)
                    break
            if raw is None:
                continue
            category = POOL_CATEGORIES[field_name]
            tagged = []
            for item in raw:
                if isinstance(item, QuestionItem):
                    tagged.append(item.with_category(category))
                elif isinstance(item, dict):
                    tagged.append({**item, "category": category})
            data[field_name] = tagged
        vocab_key = "vocabulary" if "vocabulary" in data else ("vocab" if "vocab" in data else None)
        if vocab_key:
            data[vocab_key] = [
                {"term": v} if isinstance(v, str) else v for v in (data[vocab_key] or [])
            ]
        return data
    
    def pool(self, category: QuestionCategory) -> List[QuestionItem]:
        """Items of one category."""
        for field_name, cat in POOL_CATEGORIES.items():
            if cat == category:
                return list(getattr(self, field_name))
        return []
    
    def is_subject(self, subject: str) -> bool:
        return (self.subject or "").strip().lower() == subject.strip().lower()
    
    def content_hash(self) -> str:
        """SHA-256 over the question pools, used to invalidate cached sets."""
        payload = {
            name: [item.model_dump(mode="json") for item in getattr(self, name)]
            for name in POOL_CATEGORIES
        }
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
