from urllib.parse import parse_qs, urlsplit

import pytest

from src.domain.signed_urls import SignedUrlService, SigningConfigurationError


class _Clock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _split(signed: str) -> tuple[str, dict[str, str]]:
    parts = urlsplit(signed)
    return parts.path, {key: values[0] for key, values in parse_qs(parts.query).items()}


def test_signed_path_round_trip_until_expiry():
    clock = _Clock(1_700_000_000)
    signer = SignedUrlService("top-secret", required=True, clock=clock)

    signed = signer.build_signed_path("/media/incoming/original/m-1/photo.jpg", 60)
    path, query = _split(signed)

    assert path == "/media/incoming/original/m-1/photo.jpg"
    assert query["expires"] == str(1_700_000_060)
    assert signer.verify(path, query).valid is True

    clock.now += 61
    result = signer.verify(path, query)
    assert result.valid is False
    assert result.status == 401


def test_tampered_signature_is_forbidden():
    signer = SignedUrlService("top-secret", required=True, clock=_Clock(1_700_000_000))
    path, query = _split(signer.build_signed_path("/media/a.png", 300))

    last = query["signature"][-1]
    query["signature"] = query["signature"][:-1] + ("0" if last != "0" else "1")
    result = signer.verify(path, query)

    assert result.valid is False
    assert result.status == 403


def test_signature_is_bound_to_the_path():
    signer = SignedUrlService("top-secret", required=True, clock=_Clock(1_700_000_000))
    _, query = _split(signer.build_signed_path("/media/a.png", 300))

    result = signer.verify("/media/b.png", query)
    assert result.status == 403


def test_missing_and_malformed_parameters():
    signer = SignedUrlService("top-secret", required=True, clock=_Clock(1_700_000_000))

    assert signer.verify("/media/a.png", {}).status == 401
    assert signer.verify("/media/a.png", {"signature": "abc"}).status == 401
    assert signer.verify("/media/a.png", {"signature": "abc", "expires": "soon"}).status == 400


def test_missing_secret_when_required_is_a_server_error():
    signer = SignedUrlService(None, required=True, clock=_Clock(1_700_000_000))

    result = signer.verify("/media/a.png", {"signature": "abc", "expires": "1700000300"})
    assert result.valid is False
    assert result.status == 500
    with pytest.raises(SigningConfigurationError):
        signer.assert_configured()


def test_paths_pass_through_when_signing_not_required():
    signer = SignedUrlService(None, required=False)

    assert signer.build_signed_path("/media/my file.png", 60) == "/media/my%20file.png"
    assert signer.verify("/media/my%20file.png", {}).valid is True
    signer.assert_configured()


def test_quoted_and_unquoted_paths_share_a_signature():
    signer = SignedUrlService("top-secret", required=True, clock=_Clock(1_700_000_000))
    path, query = _split(signer.build_signed_path("/media/my file.png", 60))

    assert path == "/media/my%20file.png"
    assert signer.verify("/media/my file.png", query).valid is True
