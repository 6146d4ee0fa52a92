"""Poster enhancement via the RatingPosterDB image service."""

from __future__ import annotations

from urllib.parse import quote

DEFAULT_RPDB_URL = "https://api.ratingposterdb.com"


def rpdb_poster_url(
    imdb_id: str, api_key: str, *, base_url: str = DEFAULT_RPDB_URL
) -> str | None:
    """Return the RPDB poster for an IMDb id, or ``None`` for other id schemes."""

    if not imdb_id.startswith("tt") or not api_key:
        return None
    base = base_url.rstrip("/")
    return f"{base}/{quote(api_key, safe='')}/imdb/poster-default/{imdb_id}.jpg"


def enhance_posters(
    metas: list[dict[str, object]], api_key: str, *, base_url: str = DEFAULT_RPDB_URL
) -> list[dict[str, object]]:
    """Swap posters for rating-overlay versions where RPDB can serve one."""

    enhanced: list[dict[str, object]] = []
    for meta in metas:
        poster = rpdb_poster_url(str(meta.get("id") or ""), api_key, base_url=base_url)
        enhanced.append({**meta, "poster": poster} if poster else meta)
    return enhanced
