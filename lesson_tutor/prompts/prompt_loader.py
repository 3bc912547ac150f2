"""
Prompt Loader - Load tutor persona and instruction templates from YAML.

Templates live in tutor.yaml next to this module and use str.format
placeholders. The loader composes the context description sent with
every dialogue call.
"""

import logging
import random
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from lesson_tutor.models.lesson import Lesson
from lesson_tutor.models.session import MajorPhase, TeachingStage

logger = logging.getLogger(__name__)


class PromptLoader:
    """
    Load and render tutor prompt templates.
    
    Usage:
        loader = PromptLoader()
        context = loader.build_system_message(lesson, stage=TeachingStage.DEFINITIONS)
    """
    
    def __init__(self, prompts_dir: Optional[str] = None, filename: str = "tutor.yaml"):
        """
        Initialize PromptLoader.
        
        Args:
            prompts_dir: Directory holding the YAML file. Defaults to this package.
            filename: Template file name
        """
        self._prompts_dir = Path(prompts_dir) if prompts_dir else Path(__file__).parent
        self._filename = filename
        self._templates: Dict[str, Any] = {}
        self._load()
    
    def _load(self) -> None:
        filepath = self._prompts_dir / self._filename
        if not filepath.exists():
            logger.warning(f"⚠️ Prompt file not found: {filepath} - using defaults")
            self._templates = self._get_default_templates()
            return
        try:
            with open(filepath, "r", encoding="utf-8") as f:
                self._templates = yaml.safe_load(f) or {}
            logger.info(f"✅ Loaded tutor prompts from {self._filename}")
        except yaml.YAMLError as e:
            logger.error(f"❌ Failed to parse {self._filename}: {e}")
            self._templates = self._get_default_templates()
    
    def _get_default_templates(self) -> Dict[str, Any]:
        """Minimal templates so a session can still run without the YAML file."""
        return {
            "persona": {"name": "your tutor"},
            "clean_speech": "Respond with natural spoken text only.",
            "guard": "You are {tutor_name}. Teach only the defined lesson.",
            "background": "Lesson background (do not read aloud): {scope}",
            "teaching": {
                "gate_question": "Would you like me to go over that again?",
                "comprehension_cue": "Great. Let's move on to comprehension.",
                "yes_words": ["yes"],
            },
            "intros": {},
            "worksheet_cues": ["Next worksheet question."],
        }
    
    def get(self, path: str, default: Any = None) -> Any:
        """Dotted lookup, e.g. get("teaching.gate_question")."""
        node: Any = self._templates
        for part in path.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node
    
    def render(self, path: str, **values: Any) -> str:
        """Render a template; missing templates render as empty text."""
        template = self.get(path)
        if not isinstance(template, str):
            logger.warning(f"Prompt template missing: {path}")
            return ""
        return template.format(**values).strip()
    
    # =========================================================================
    # Fixed phrases
    # =========================================================================
    
    @property
    def tutor_name(self) -> str:
        return self.get("persona.name", "your tutor")
    
    @property
    def gate_question(self) -> str:
        return self.get("teaching.gate_question")
    
    @property
    def comprehension_cue(self) -> str:
        return self.get("teaching.comprehension_cue")
    
    @property
    def worksheet_cues(self) -> List[str]:
        return list(self.get("worksheet_cues", []))
    
    def is_yes(self, reply: str) -> bool:
        """True when a gate reply asks for a repeat."""
        words = set(re.findall(r"[a-z']+", (reply or "").lower()))
        return bool(words & set(self.get("teaching.yes_words", ["yes"]))) and "no" not in words
    
    def phase_intro(self, phase: MajorPhase, rng: Optional[random.Random] = None) -> str:
        intros = self.get(f"intros.{phase.value}", []) or []
        if not intros:
            return ""
        return (rng or random).choice(intros)
    
    def worksheet_cue(self, rng: Optional[random.Random] = None) -> str:
        return (rng or random).choice(self.worksheet_cues or ["Next worksheet question."])
    
    # =========================================================================
    # Context composition
    # =========================================================================
    
    def style_for(self, grade: Optional[str], difficulty: Optional[str]) -> str:
        """
        Speaking style for the learner's grade and the lesson difficulty.
        
        Grade "K" (or no digits) is kindergarten; 1-2 early; 3-5 elementary;
        6 and up middle.
        """
        grade_text = str(grade or "").strip().lower()
        match = re.search(r"(\d+)", grade_text)
        grade_num = int(match.group(1)) if match else 0
        
        if grade_num == 0:
            band = "kindergarten"
        elif grade_num <= 2:
            band = "early"
        elif grade_num <= 5:
            band = "elementary"
        else:
            band = "middle"
        band_style = self.get(f"style.grades.{band}", {}) or {}
        age = band_style.get("age") or f"{grade_num + 5}-{grade_num + 6} year old"
        
        diff = (difficulty or "beginner").strip().lower()
        if diff not in ("beginner", "intermediate", "advanced"):
            diff = "beginner"
        
        parts = [
            f"Speaking style for this lesson: you are speaking to a {age} learner at {diff} difficulty level.",
            band_style.get("vocabulary", ""),
            band_style.get("sentences", ""),
            band_style.get("depth", ""),
            self.get(f"style.difficulty.{diff}", ""),
            self.get("style.closing", ""),
        ]
        return " ".join(p.strip() for p in parts if p)
    
    def _vocab_block(self, lesson: Lesson) -> str:
        if not lesson.vocabulary:
            return ""
        if all(v.definition for v in lesson.vocabulary):
            lines = "\n".join(f"- {v.term}: {v.definition}" for v in lesson.vocabulary)
            return "Vocab (each term with provided definition):\n" + lines + "\n" + self.render("vocab.with_definitions")
        terms = ", ".join(v.term for v in lesson.vocabulary)
        return f"Vocab list: {terms}.\n" + self.render("vocab.terms_only")
    
    def build_system_message(
        self,
        lesson: Lesson,
        stage: Optional[TeachingStage] = None,
        include_guard: bool = True,
        gate_phrase: Optional[str] = None,
    ) -> str:
        """
        Compose the context description for a dialogue call.
        
        Teaching notes take priority over the title as lesson scope.
        Vocabulary is only included for the definitions stage and the
        guard text only when the phase has not received it yet.
        """
        notes = (lesson.teaching_notes or "").strip()
        scope = notes or lesson.title.strip()
        parts = [
            self.render("clean_speech"),
            self.render("background", scope=scope),
            self._vocab_block(lesson) if stage == TeachingStage.DEFINITIONS else "",
            self.render("guard", tutor_name=self.tutor_name) if include_guard else "",
            self.style_for(lesson.grade, lesson.difficulty),
            self.render("normalization_note"),
            self.render("gate_phrase_line", phrase=gate_phrase) if gate_phrase else "",
        ]
        return "\n\n".join(p for p in parts if p)


_prompt_loader: Optional[PromptLoader] = None


def get_prompt_loader() -> PromptLoader:
    """Get or create the prompt loader singleton."""
    global _prompt_loader
    if _prompt_loader is None:
        _prompt_loader = PromptLoader()
    return _prompt_loader
