from cfp_federation.services.profile_adapter import (
    CO_SPEAKER_LINKED,
    SCOPE_MATERIALS,
    SCOPE_PROFILE,
    normalize_speaker_profile,
)


def test_normalize_unwraps_data_envelope_and_nested_profile():
    payload = {
        "data": {
            "speakerId": "spk_1",
            "eventId": "fed_evt_1",
            "consentedScopes": ["profile", "materials", "bogus"],
            "profile": {
                "fullName": "Ada Lovelace",
                "bio": "Mathematician",
                "slug": "london",
                "expertiseTags": ["python", "math"],
            },
            "materials": [
                {"id": "m1", "title": "Slides", "type": "slides", "fileUrl": "https://files.example.com/a.pdf"},
                {"title": "no id, dropped"},
            ],
            "coSpeakers": [
                {"id": "c1", "type": "linked", "name": "Grace", "speakerProfileId": "spk_2"},
            ],
        }
    }

    profile = normalize_speaker_profile(payload)

    assert profile.speaker_id == "spk_1"
    assert profile.event_id == "fed_evt_1"
    assert profile.consented_scopes == ("profile", "materials")
    assert profile.full_name == "Ada Lovelace"
    assert profile.location == "london"
    assert profile.topics == ("python", "math")
    assert [material.id for material in profile.materials] == ["m1"]
    assert profile.co_speakers[0].type == CO_SPEAKER_LINKED
    assert profile.co_speakers[0].full_name == "Grace"


def test_normalize_accepts_flat_shape_with_fallbacks():
    payload = {
        "fullName": "Flat Name",
        "scopes": ["email"],
        "email": "flat@example.com",
        "profile": {"name": None},
        "socialLinks": {"github": "flat", "website": "https://flat.example.com"},
    }

    profile = normalize_speaker_profile(payload, speaker_id="spk_flat")

    assert profile.speaker_id == "spk_flat"
    assert profile.full_name == "Flat Name"
    assert profile.email == "flat@example.com"
    assert profile.social_links.github == "flat"
    assert profile.website_url == "https://flat.example.com"


def test_scoped_drops_fields_without_consent():
    profile = normalize_speaker_profile(
        {
            "speakerId": "spk_1",
            "consentedScopes": [SCOPE_MATERIALS],
            "email": "hidden@example.com",
            "profile": {"fullName": "Hidden", "bio": "Hidden bio"},
            "socialLinks": {"twitter": "hidden"},
            "materials": [{"id": "m1", "title": "Slides"}],
        }
    )

    scoped = profile.scoped()

    assert scoped.full_name is None
    assert scoped.bio is None
    assert scoped.email is None
    assert scoped.social_links.twitter is None
    assert len(scoped.materials) == 1


def test_scoped_without_materials_scope_has_no_materials():
    profile = normalize_speaker_profile(
        {
            "speakerId": "spk_1",
            "consentedScopes": [SCOPE_PROFILE],
            "profile": {"fullName": "Visible"},
            "materials": [{"id": "m1", "title": "Slides"}],
        }
    ).scoped()

    assert profile.full_name == "Visible"
    assert profile.materials == ()
