"""Spoiler visibility policy shared by every rendering surface."""

from __future__ import annotations

from ..models import Interaction, Release, RevealState, SpoilerConfig, SpoilerDecision

HIDDEN_OVERVIEW_PLACEHOLDER = "Overview hidden to avoid spoilers."
MISSING_OVERVIEW_PLACEHOLDER = "No overview available."


def is_gated(release: Release, interaction: Interaction | None, config: SpoilerConfig) -> bool:
    """Return whether the release is subject to spoiler rules at all."""

    is_watched = interaction.is_watched if interaction is not None else False
    return not is_watched and (not release.is_movie or config.include_movies)


def evaluate(
    release: Release,
    interaction: Interaction | None,
    config: SpoilerConfig,
    reveal: RevealState | None = None,
) -> SpoilerDecision:
    """Decide per field whether the release's content must be withheld.

    The result depends only on the arguments, so independent surfaces asking
    about the same release always agree.
    """

    reveal = reveal or RevealState()
    gated = is_gated(release, interaction, config)
    image_blocked = gated and config.images and not reveal.image
    return SpoilerDecision(
        image_blocked=image_blocked,
        title_blocked=gated and config.title and not reveal.title,
        overview_blocked=gated and config.overview and not reveal.overview,
        use_banner=image_blocked and config.replacement_mode == "banner",
    )


def select_image(release: Release, decision: SpoilerDecision) -> str | None:
    """Pick the image path a consumer may display for the release.

    In banner mode a blocked release never exposes its still, not even as a
    fallback; in blur mode the still is returned and the consumer blurs it.
    """

    if decision.use_banner:
        return release.backdrop_path or release.poster_path
    return release.still_path or release.poster_path


def display_title(release: Release, decision: SpoilerDecision) -> str:
    if release.is_movie:
        title = release.show_name or release.name or ""
    else:
        title = release.name or ""
    if decision.title_blocked and not release.is_movie:
        return f"Episode {release.episode_number}"
    if decision.title_blocked:
        return "Upcoming release"
    return title


def display_overview(release: Release, decision: SpoilerDecision) -> str:
    """Return the overview text or a neutral placeholder."""

    if decision.overview_blocked:
        return HIDDEN_OVERVIEW_PLACEHOLDER
    overview = (release.overview or "").strip()
    return overview or MISSING_OVERVIEW_PLACEHOLDER
