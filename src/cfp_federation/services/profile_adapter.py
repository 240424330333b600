"""Normalize speaker profile payloads returned by the directory.

Older and newer directory releases disagree on where some fields live, so
``normalize_speaker_profile`` tries the known shapes in a fixed order:

1. a ``{"data": {...}}`` envelope, else the bare body;
2. display name from ``profile.fullName``, ``profile.name``, then ``fullName``;
3. scopes from ``consentedScopes``, then ``scopes``;
4. social links from ``socialLinks``, then ``profile.socialLinks``;
5. location from ``profile.location``, then ``profile.slug``.

The first non-empty candidate wins. ``SpeakerProfile.scoped`` then drops every
field the speaker did not consent to share.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

SCOPE_PROFILE = "profile"
SCOPE_SOCIAL_LINKS = "social_links"
SCOPE_MATERIALS = "materials"
SCOPE_EMAIL = "email"
KNOWN_SCOPES = frozenset({SCOPE_PROFILE, SCOPE_SOCIAL_LINKS, SCOPE_MATERIALS, SCOPE_EMAIL})

CO_SPEAKER_LINKED = "linked"
CO_SPEAKER_GUEST = "guest"


@dataclass(frozen=True)
class SocialLinks:
    twitter: str | None = None
    linkedin: str | None = None
    github: str | None = None
    website: str | None = None


@dataclass(frozen=True)
class RemoteMaterial:
    """A talk material as described by the directory."""

    id: str
    title: str
    type: str = "other"
    description: str | None = None
    is_external: bool = False
    external_url: str | None = None
    file_url: str | None = None
    file_name: str | None = None
    file_size: int | None = None


@dataclass(frozen=True)
class RemoteCoSpeaker:
    id: str
    type: str
    full_name: str | None = None
    company: str | None = None
    bio: str | None = None
    photo_url: str | None = None
    speaker_profile_id: str | None = None


@dataclass(frozen=True)
class SpeakerProfile:
    """Directory speaker profile in a single, flat shape."""

    speaker_id: str
    event_id: str | None = None
    consented_scopes: tuple[str, ...] = ()
    full_name: str | None = None
    email: str | None = None
    bio: str | None = None
    company: str | None = None
    position: str | None = None
    location: str | None = None
    avatar_url: str | None = None
    website_url: str | None = None
    speaking_experience: str | None = None
    experience_level: str | None = None
    topics: tuple[str, ...] = ()
    languages: tuple[str, ...] = ()
    social_links: SocialLinks = field(default_factory=SocialLinks)
    materials: tuple[RemoteMaterial, ...] = ()
    co_speakers: tuple[RemoteCoSpeaker, ...] = ()

    def has_scope(self, scope: str) -> bool:
        return scope in self.consented_scopes

    def scoped(self) -> SpeakerProfile:
        """Return a copy holding only the fields covered by consented scopes."""

        profile = self
        if not self.has_scope(SCOPE_PROFILE):
            profile = replace(
                profile,
                full_name=None,
                bio=None,
                company=None,
                position=None,
                location=None,
                avatar_url=None,
                website_url=None,
                speaking_experience=None,
                experience_level=None,
                topics=(),
                languages=(),
                co_speakers=(),
            )
        if not self.has_scope(SCOPE_EMAIL):
            profile = replace(profile, email=None)
        if not self.has_scope(SCOPE_SOCIAL_LINKS):
            profile = replace(profile, social_links=SocialLinks())
        if not self.has_scope(SCOPE_MATERIALS):
            profile = replace(profile, materials=())
        return profile


def _first(*candidates: Any) -> Any:
    for candidate in candidates:
        if candidate not in (None, "", [], {}):
            return candidate
    return None


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _strings(value: Any) -> tuple[str, ...]:
    if not isinstance(value, Iterable) or isinstance(value, (str, bytes, Mapping)):
        return ()
    return tuple(str(item) for item in value if item)


def _optional_str(value: Any) -> str | None:
    return str(value) if value not in (None, "") else None


def _parse_material(raw: Mapping[str, Any]) -> RemoteMaterial | None:
    material_id = raw.get("id")
    if not material_id:
        return None
    size = raw.get("fileSize")
    return RemoteMaterial(
        id=str(material_id),
        title=str(raw.get("title") or f"material-{material_id}"),
        type=str(raw.get("type") or "other"),
        description=_optional_str(raw.get("description")),
        is_external=bool(raw.get("isExternal")),
        external_url=_optional_str(raw.get("externalUrl")),
        file_url=_optional_str(raw.get("fileUrl")),
        file_name=_optional_str(raw.get("fileName")),
        file_size=int(size) if isinstance(size, int) else None,
    )


def _parse_co_speaker(raw: Mapping[str, Any]) -> RemoteCoSpeaker | None:
    co_speaker_id = raw.get("id")
    if not co_speaker_id:
        return None
    return RemoteCoSpeaker(
        id=str(co_speaker_id),
        type=str(raw.get("type") or CO_SPEAKER_GUEST),
        full_name=_optional_str(_first(raw.get("fullName"), raw.get("name"))),
        company=_optional_str(raw.get("company")),
        bio=_optional_str(raw.get("bio")),
        photo_url=_optional_str(_first(raw.get("photoUrl"), raw.get("avatarUrl"))),
        speaker_profile_id=_optional_str(raw.get("speakerProfileId")),
    )


def unwrap_envelope(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    """Return the inner body of a ``{"data": {...}}`` envelope, or ``payload`` itself."""
    inner = payload.get("data")
    if isinstance(inner, Mapping) and ("speakerId" in inner or "profile" in inner):
        return inner
    return payload


def normalize_speaker_profile(
    payload: Mapping[str, Any], speaker_id: str | None = None
) -> SpeakerProfile:
    """Build a ``SpeakerProfile`` from any supported directory response shape."""

    body = unwrap_envelope(payload)
    nested = _mapping(body.get("profile"))
    social = _mapping(_first(body.get("socialLinks"), nested.get("socialLinks")))

    scopes = tuple(
        scope
        for scope in _strings(_first(body.get("consentedScopes"), body.get("scopes")))
        if scope in KNOWN_SCOPES
    )

    materials = tuple(
        material
        for material in (
            _parse_material(item) for item in body.get("materials") or [] if isinstance(item, Mapping)
        )
        if material is not None
    )
    co_speakers = tuple(
        co_speaker
        for co_speaker in (
            _parse_co_speaker(item)
            for item in body.get("coSpeakers") or []
            if isinstance(item, Mapping)
        )
        if co_speaker is not None
    )

    return SpeakerProfile(
        speaker_id=str(_first(body.get("speakerId"), speaker_id) or ""),
        event_id=_optional_str(body.get("eventId")),
        consented_scopes=scopes,
        full_name=_optional_str(
            _first(nested.get("fullName"), nested.get("name"), body.get("fullName"))
        ),
        email=_optional_str(_first(body.get("email"), nested.get("email"))),
        bio=_optional_str(nested.get("bio")),
        company=_optional_str(nested.get("company")),
        position=_optional_str(nested.get("position")),
        location=_optional_str(_first(nested.get("location"), nested.get("slug"))),
        avatar_url=_optional_str(nested.get("avatarUrl")),
        website_url=_optional_str(_first(nested.get("websiteUrl"), social.get("website"))),
        speaking_experience=_optional_str(nested.get("speakingExperience")),
        experience_level=_optional_str(nested.get("experienceLevel")),
        topics=_strings(_first(nested.get("topics"), nested.get("expertiseTags"))),
        languages=_strings(nested.get("languages")),
        social_links=SocialLinks(
            twitter=_optional_str(social.get("twitter")),
            linkedin=_optional_str(social.get("linkedin")),
            github=_optional_str(social.get("github")),
            website=_optional_str(social.get("website")),
        ),
        materials=materials,
        co_speakers=co_speakers,
    )
