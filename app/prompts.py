"""Prompt text for catalog generation."""

from __future__ import annotations

from .catalogs import CatalogVariant
from .models import ContentType, UserConfig
from .signals import ContextSignals, describe_context

VARIANT_FOCUS: dict[str, list[str]] = {
    "discover": [
        "Recommend UNEXPECTED titles the viewer would never find on their own",
        "Include hidden gems, cult classics and international titles",
        "Prioritise discovery over mainstream appeal",
    ],
    "comfort": [
        "Focus on feel-good, heartwarming and rewatchable titles",
        "Avoid heavy drama, horror, intense thrillers or sad endings",
    ],
    "easy": [
        "Light, low-stakes series that are easy to follow",
        "Sitcoms, procedurals and anthology series work well",
    ],
    "binge": [
        "Highly addictive series with strong hooks and cliffhangers",
        "Prefer shows with several seasons available",
    ],
    "hidden": [
        "Avoid mainstream blockbusters and widely known titles",
        "Critically acclaimed but rarely seen; festival and foreign favourites",
    ],
    "greats": [
        "Essential classics and masterpieces of the medium",
        "Award winners and highly influential works",
    ],
}


def _context_block(config: UserConfig, signals: ContextSignals) -> str:
    lines = [
        f"- Local time: {signals.local_time:%H:%M} on {signals.day_of_week} ({signals.time_of_day})",
        f"- Day type: {signals.day_type}",
        f"- Season: {signals.season}",
        f"- Country: {config.country}",
    ]
    if signals.holiday:
        lines.append(f"- Nearby holiday: {signals.holiday}")
    if signals.weather is not None:
        lines.append(f"- Weather: {signals.weather.describe()}")
    return "\n".join(lines)


def _preference_lines(config: UserConfig) -> list[str]:
    lines: list[str] = []
    if config.excluded_genres:
        lines.append(f"EXCLUDE: Never recommend {', '.join(config.excluded_genres)} content.")
    if config.min_rating is not None:
        lines.append(f"Only recommend titles rated at least {config.min_rating:g}/10 on IMDb.")
    if config.novelty_bias >= 70:
        lines.append("Lean towards lesser-known titles over familiar ones.")
    elif config.novelty_bias <= 30:
        lines.append("Lean towards well-known, proven titles.")
    if config.popularity_bias >= 70:
        lines.append("Favour popular, widely loved titles.")
    elif config.popularity_bias <= 30:
        lines.append("Favour niche and cult titles over crowd-pleasers.")
    return lines


def _output_instruction(content_type: ContentType, show_explanations: bool) -> str:
    if content_type == "movie":
        emphasis = "Only movies/films - NO TV shows or series"
    else:
        emphasis = "Only TV series/shows with episodes - NO movies or films"
    reason = ',"reason":"..."' if show_explanations else ""
    instruction = f"TYPE: {emphasis}\n\nReturn JSON: {{\"items\":[{{\"title\":\"...\",\"year\":...{reason}}}]}}"
    if not show_explanations:
        instruction += '\nDo NOT include a "reason" field.'
    return instruction


def build_catalog_prompt(
    config: UserConfig,
    signals: ContextSignals,
    content_type: ContentType,
    variant: CatalogVariant,
    count: int,
) -> str:
    """Return the user prompt for one catalog generation call."""

    plural = "movies" if content_type == "movie" else "series"
    sections = [
        f"Recommend {count} {plural} perfect for watching {describe_context(signals)}.",
        "CURRENT CONTEXT:\n" + _context_block(config, signals),
    ]

    focus = VARIANT_FOCUS.get(variant.key)
    if focus:
        sections.append(
            f'SPECIAL FOCUS: "{variant.title}"\n' + "\n".join(f"- {line}" for line in focus)
        )
    else:
        sections.append(
            "INSTRUCTIONS:\n"
            "- Match recommendations to the current context above\n"
            "- Mix popular titles with lesser-known gems\n"
            "- Ensure variety in tone and style"
        )

    preferences = _preference_lines(config)
    if preferences:
        sections.append("\n".join(preferences))
    sections.append(_output_instruction(content_type, config.show_explanations))
    return "\n\n".join(sections)


SEARCH_INSTRUCTIONS = """INSTRUCTIONS:
Interpret the search naturally and return the most relevant titles.
- Correct typos and misspellings ("scfi" means sci-fi)
- Read moods as tone ("something relaxing" means calm, slow-paced picks)
- Treat comparisons as similarity ("like Inception" means mind-bending films)
- Respect exclusions ("horror but not gory" means psychological horror)
- Respect eras ("90s action" means 1990-1999)
- Use the current context only when the search leaves room for it"""


def build_search_prompt(
    config: UserConfig,
    signals: ContextSignals,
    content_type: ContentType,
    query: str,
    count: int,
) -> str:
    """Return the user prompt for a natural-language search of one content type."""

    plural = "movies" if content_type == "movie" else "series"
    sections = [
        f'USER SEARCH: "{query.strip()}"',
        "CURRENT CONTEXT:\n" + _context_block(config, signals),
        SEARCH_INSTRUCTIONS,
        f"Return {count} {plural}.",
    ]
    if config.excluded_genres:
        sections.append(
            f"NEVER include {', '.join(config.excluded_genres)} content regardless of the search."
        )
    sections.append(_output_instruction(content_type, config.show_explanations))
    return "\n\n".join(sections)
