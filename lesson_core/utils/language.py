"""Arabic script detection and display names for grammar features."""
import re
from typing import Optional

# Unicode ranges for Arabic script (base, supplement, extended-A, presentation forms A/B)
ARABIC = r"[\u0600-\u06FF\u0750-\u077F\u08A0-\u08FF\uFB50-\uFDFF\uFE70-\uFEFF]+"

# grammar_feature code -> display name used in fact text and prompts
FEATURE_NAMES = {
    "part_of_speech": "parts of speech",
    "grammatical_case": "grammatical cases",
    "verb_form": "verb forms",
    "verb_tense": "verb tenses",
    "verb_voice": "active/passive voice",
    "gender": "gender agreement",
    "number": "singular/plural",
    "root": "root identification",
    "translation": "translation",
    "vocabulary": "vocabulary",
}


def has_arabic_script(text: Optional[str]) -> bool:
    """Return True if text contains any Arabic script."""
    return bool(text) and re.search(ARABIC, text) is not None


def extract_arabic(text: Optional[str]) -> Optional[str]:
    """Return the Arabic runs in text joined by spaces, or None when there are none."""
    if not text:
        return None
    matches = re.findall(ARABIC, text)
    return " ".join(matches) if matches else None


def format_feature_name(feature: str) -> str:
    """
    Human-readable name for a grammar feature code.

    Known codes map to curated names; anything else has underscores replaced,
    so free-form features such as "gender agreement" pass through unchanged.
    """
    return FEATURE_NAMES.get(feature, feature.replace("_", " "))
