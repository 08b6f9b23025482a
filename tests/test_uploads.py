import hashlib
import hmac

import pytest

from dds_ai import uploads


def test_signature_is_hmac_sha1_of_token_and_expire():
    params = uploads.upload_auth_params(private_key="private_abc", token="tok-1", expire=1700000000)

    expected = hmac.new(b"private_abc", b"tok-11700000000", hashlib.sha1).hexdigest()
    assert params["signature"] == expected
    assert params["token"] == "tok-1"
    assert params["expire"] == 1700000000


def test_defaults_generate_token_and_future_expiry(monkeypatch):
    monkeypatch.setattr(uploads.time, "time", lambda: 1000.0)
    a = uploads.upload_auth_params(private_key="k")
    b = uploads.upload_auth_params(private_key="k")

    assert a["token"] != b["token"]
    assert a["expire"] == 1000 + uploads.UPLOAD_TTL_S


def test_missing_key_is_unavailable(monkeypatch):
    monkeypatch.setattr(uploads, "IMAGE_KIT_PRIVATE_KEY", None)
    with pytest.raises(uploads.UploadsUnavailable) as exc:
        uploads.upload_auth_params()
    assert exc.value.status_code == 503
