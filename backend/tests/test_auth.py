from jose import jwt

from access_control import Principal, Role
from api.auth_middleware import _extract_token, create_access_token, decode_principal


def test_token_round_trips_principal_claims() -> None:
    principal = Principal(user_id="u-7", email="m@example.com", role=Role.MANAGER, regions=("JP", "IN"))

    decoded = decode_principal(create_access_token(principal))

    assert decoded == principal


def test_token_signed_with_other_key_is_rejected() -> None:
    token = jwt.encode({"sub": "u-1", "role": "ADMIN"}, "wrong-secret", algorithm="HS256")

    assert decode_principal(token) is None


def test_token_without_subject_is_rejected() -> None:
    from config import settings

    token = jwt.encode({"role": "ADMIN"}, settings.SECRET_KEY, algorithm="HS256")

    assert decode_principal(token) is None


def test_unknown_role_claim_becomes_viewer() -> None:
    from config import settings

    token = jwt.encode({"sub": "u-1", "role": "superuser", "regions": "JP"}, settings.SECRET_KEY, algorithm="HS256")

    principal = decode_principal(token)
    assert principal.role == Role.VIEWER
    assert principal.regions == ("JP",)


def test_bearer_header_parsing() -> None:
    assert _extract_token("Bearer abc") == "abc"
    assert _extract_token("Token abc") is None
    assert _extract_token(None) is None
