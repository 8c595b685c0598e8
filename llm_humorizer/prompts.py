"""Caption prompt construction.

A gallery carries `GallerySettings`; `build_prompt` turns them into the
instruction text sent to the model. Every axis contributes exactly one
fragment, unknown values fall back to that axis' neutral fragment, and the
result depends on nothing but the settings.
"""

import logging
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

DEFAULT_CUSTOM_ENDING = "Not to be taken seriously 😉"

INTRO = (
    "You are a creative writer for a fun party app. Analyse the person in the photo "
    "as a fictional character and invent a light, funny persona for them."
)

DEFAULT_PROMPT = " ".join([
    INTRO,
    "Focus on facial expression, pose, clothing and overall vibe; give the persona a humorous twist.",
    "Offer a funny (but respectful) guess at their age and a possible everyday occupation.",
    "120-140 words, easy to read, ending with the sentence: \"" + DEFAULT_CUSTOM_ENDING + "\"",
])

AGE_RANGE = {
    "8-12": "The readers are children aged 8-12: keep it simple, playful and completely innocent.",
    "13-17": "The readers are teenagers aged 13-17: keep it cool and light, nothing embarrassing or mature.",
    "18+": "The readers are adults: grown-up wit is fine, but stay kind.",
}
AGE_RANGE_DEFAULT = "Write for a general audience."

LANGUAGE = {
    "hebrew_regular": "Write in clear, standard Hebrew.",
    "hebrew_slang": "Write in Hebrew with light, friendly everyday slang.",
    "english_regular": "Write in clear, standard English.",
}
LANGUAGE_DEFAULT = "Write in the language of the audience, clearly and simply."

TONE = {
    "encouraging": "Tone: warm and encouraging, the joke is always on the situation, never on the person.",
    "standup": "Tone: a stand-up comedy bit with a setup and a punchline.",
    "satirical": "Tone: light satire, gently poking fun at everyday habits.",
    "poetic": "Tone: mock-poetic, grand language about ordinary things.",
    "documentary": "Tone: a nature-documentary narrator observing a rare species.",
}
TONE_DEFAULT = "Tone: friendly and humorous."

ENERGY = {
    "calm": "Energy: calm and dry, understated delivery.",
    "moderate": "Energy: balanced, lively but not hyper.",
    "energetic": "Energy: bouncy and excited, short punchy sentences.",
}
ENERGY_DEFAULT = "Energy: balanced."

GENRE = {
    "contemporary": "Setting: the real, contemporary world.",
    "fantasy": "Setting: a fantasy realm; the persona is a hero, wizard or magical creature.",
    "scifi": "Setting: science fiction; the persona lives in the future or in space.",
    "noir": "Setting: a noir detective story, moody and mysterious.",
    "folklore": "Setting: a folk tale told by a grandparent.",
    "trailer": "Setting: a blockbuster movie trailer voice-over.",
}
GENRE_DEFAULT = "Setting: everyday life."

HUMOR_LEVEL = {
    "gentle": "Humor strength: gentle, smile-worthy rather than laugh-out-loud.",
    "witty": "Humor strength: witty, clever wordplay and sharp observations.",
    "mild_exaggeration": "Humor strength: mild exaggeration, blow small details out of proportion.",
}
HUMOR_LEVEL_DEFAULT = "Humor strength: light."

FAMILY_FRIENDLY = {
    "high": "Strictly family friendly: no innuendo, no insults about looks, weight or age.",
    "regular": "Keep it clean and respectful; no insults about looks or body.",
}
FAMILY_FRIENDLY_DEFAULT = "Keep it respectful."

EMOJI_USAGE = {
    "none": "Do not use emoji.",
    "minimal": "Use at most one or two emoji.",
    "moderate": "Sprinkle a few fitting emoji through the text.",
}
EMOJI_USAGE_DEFAULT = "Use emoji sparingly."

PERSPECTIVE = {
    "third_person": "Describe the person in the third person.",
    "direct": "Address the person directly as \"you\".",
}
PERSPECTIVE_DEFAULT = "Describe the person in the third person."

CULTURAL_REFERENCES = {
    "none": "Avoid cultural or pop-culture references.",
    "light_israeli": "Light Israeli cultural references are welcome.",
    "light_international": "Light international pop-culture references are welcome.",
}
CULTURAL_REFERENCES_DEFAULT = "Avoid references the audience may not know."

LANGUAGE_RICHNESS = {
    "simple": "Vocabulary: simple words and short sentences.",
    "regular": "Vocabulary: everyday, natural language.",
    "rich": "Vocabulary: rich and colourful, playful expressions welcome.",
}
LANGUAGE_RICHNESS_DEFAULT = "Vocabulary: everyday language."

ABSURDITY_LEVEL = {
    "low": "Absurdity: keep it grounded and believable.",
    "moderate": "Absurdity: a couple of silly, surprising twists.",
    "high": "Absurdity: go wild with ridiculous, over-the-top inventions.",
}
ABSURDITY_LEVEL_DEFAULT = "Absurdity: a little silliness is fine."

FOCUS_LABELS = {
    "expression": "facial expression",
    "pose": "pose",
    "clothing": "clothing",
    "background": "background",
}


class _SettingsModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra='ignore')


class FocusWeights(_SettingsModel):
    expression: float = Field(default=0.5, ge=0, le=1)
    pose: float = Field(default=0.2, ge=0, le=1)
    clothing: float = Field(default=0.2, ge=0, le=1)
    background: float = Field(default=0.1, ge=0, le=1)


class GallerySettings(_SettingsModel):
    """Captioning style of a gallery. Accepts snake_case or camelCase keys."""
    age_range: str = "18+"
    language: str = "hebrew_regular"
    tone: str = "standup"
    genre: str = "contemporary"
    target_length: int = Field(default=130, ge=20, le=500)
    family_friendly: str = "high"
    humor_level: str = "witty"
    emoji_usage: str = "minimal"
    perspective: str = "third_person"
    energy: str = "moderate"
    language_richness: str = "regular"
    cultural_references: str = "none"
    custom_ending: str = DEFAULT_CUSTOM_ENDING
    absurdity_level: str = Field(
        default="moderate",
        validation_alias=AliasChoices("absurdity_level", "absurdityLevel", "shtuyotLevel"),
    )
    focus_weights: FocusWeights = Field(default_factory=FocusWeights)

    @classmethod
    def from_stored(cls, data: Optional[Dict[str, Any]]) -> "GallerySettings":
        """Settings from a gallery row; malformed data falls back to defaults."""
        if not data:
            return cls()
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            logger.warning("Invalid stored gallery settings, using defaults: %s", exc)
            return cls()


def _fragment(table: Dict[str, str], value: Optional[str], default: str) -> str:
    return table.get(str(value or '').strip(), default)


def _focus_fragment(weights: FocusWeights) -> str:
    items = [(name, getattr(weights, name)) for name in FOCUS_LABELS]
    total = sum(w for _, w in items)
    if total <= 0:
        return "Give equal attention to expression, pose, clothing and background."
    # stable order: heaviest first, ties in declaration order
    ranked = sorted(items, key=lambda item: -item[1])
    parts = [f"{FOCUS_LABELS[name]} {round(w / total * 100)}%" for name, w in ranked if w > 0]
    return "Split your attention roughly as: " + ", ".join(parts) + "."


def build_prompt(settings: Optional[GallerySettings] = None) -> str:
    """Assemble the model instructions for `settings` (default prompt when None)."""
    if settings is None:
        return DEFAULT_PROMPT
    fragments = [
        INTRO,
        _fragment(AGE_RANGE, settings.age_range, AGE_RANGE_DEFAULT),
        _fragment(LANGUAGE, settings.language, LANGUAGE_DEFAULT),
        _fragment(TONE, settings.tone, TONE_DEFAULT),
        _fragment(ENERGY, settings.energy, ENERGY_DEFAULT),
        _fragment(GENRE, settings.genre, GENRE_DEFAULT),
        _fragment(HUMOR_LEVEL, settings.humor_level, HUMOR_LEVEL_DEFAULT),
        _fragment(FAMILY_FRIENDLY, settings.family_friendly, FAMILY_FRIENDLY_DEFAULT),
        _fragment(EMOJI_USAGE, settings.emoji_usage, EMOJI_USAGE_DEFAULT),
        _fragment(PERSPECTIVE, settings.perspective, PERSPECTIVE_DEFAULT),
        _fragment(CULTURAL_REFERENCES, settings.cultural_references, CULTURAL_REFERENCES_DEFAULT),
        _fragment(LANGUAGE_RICHNESS, settings.language_richness, LANGUAGE_RICHNESS_DEFAULT),
        _fragment(ABSURDITY_LEVEL, settings.absurdity_level, ABSURDITY_LEVEL_DEFAULT),
        _focus_fragment(settings.focus_weights),
        f"Length: about {settings.target_length} words.",
    ]
    ending = (settings.custom_ending or '').strip()
    if ending:
        fragments.append(f"End with exactly this sentence: \"{ending}\"")
    return " ".join(fragments)
