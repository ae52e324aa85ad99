"""Token issuing and the gates that protect routes.

Every protected route runs ``verify_token`` first and then its own gates in
the order given to ``protected``. A gate either returns normally or raises an
``ApiError``; the view only runs once all gates have passed.

Role checks read the user directory on every request, so a promotion or a
revocation is visible on the caller's next request without a new token.
"""

from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Callable, NamedTuple, Optional

from flask import current_app, g, request
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt,
    get_jwt_identity,
    verify_jwt_in_request,
)

from cars_arena.database import get_db, parse_object_id
from cars_arena.errors import (
    InsufficientPrivilege,
    InvalidCredential,
    InvalidRequest,
    MissingCredential,
    OwnershipMismatch,
    ResourceNotFound,
    error_response,
)

ADMIN_ROLE = "admin"
GUEST_ROLE = "guest"
TOKEN_LIFETIME = timedelta(hours=24)

# Claims owned by the token layer; callers cannot override them.
RESERVED_CLAIMS = {"sub", "iat", "nbf", "exp", "jti", "type", "fresh", "csrf"}

Gate = Callable[[], None]
OwnerResolver = Callable[[], Optional[str]]


class Identity(NamedTuple):
    email: str
    issued_at: Optional[datetime]
    expires_at: Optional[datetime]


def _timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def init_jwt(app) -> JWTManager:
    jwt = JWTManager(app)

    @jwt.unauthorized_loader
    def handle_missing_token(reason: str):
        # A header that is present but unusable counts as an invalid credential.
        if request.headers.get(app.config["JWT_HEADER_NAME"], "").strip():
            current_app.logger.info("Rejected malformed credential: %s", reason)
            return error_response(InvalidCredential())
        return error_response(MissingCredential())

    @jwt.invalid_token_loader
    def handle_invalid_token(reason: str):
        current_app.logger.info("Rejected invalid token: %s", reason)
        return error_response(InvalidCredential())

    @jwt.expired_token_loader
    def handle_expired_token(jwt_header, jwt_payload):
        current_app.logger.info("Rejected expired token for %s", jwt_payload.get("sub"))
        return error_response(InvalidCredential())

    return jwt


def issue_token(payload, expires_delta: Optional[timedelta] = None) -> str:
    """Sign the caller-supplied identity payload.

    No credential check happens here; the email is trusted as claimed.
    """
    if not isinstance(payload, dict):
        raise InvalidRequest("A JSON object body is required.")

    email = payload.get("email")
    if not isinstance(email, str) or not email:
        raise InvalidRequest("An email is required to issue a token.")

    claims = {key: value for key, value in payload.items() if key not in RESERVED_CLAIMS}
    return create_access_token(
        identity=email,
        additional_claims=claims,
        expires_delta=expires_delta or TOKEN_LIFETIME,
    )


def verify_token() -> Identity:
    verify_jwt_in_request()
    claims = get_jwt()
    identity = Identity(
        email=get_jwt_identity(),
        issued_at=_timestamp(claims.get("iat")),
        expires_at=_timestamp(claims.get("exp")),
    )
    g.identity = identity
    return identity


def current_identity() -> Identity:
    identity = g.get("identity")
    if identity is None:
        raise MissingCredential()
    return identity


def stored_role(email: str) -> Optional[str]:
    """Current role from the directory; ``None`` when the user has no record."""
    user = get_db().users.find_one({"email": email})
    if user is None:
        current_app.logger.warning("No directory record for %s during role check", email)
        return None
    return user.get("role")


def require_role(*roles: str) -> Gate:
    allowed = set(roles)

    def gate():
        identity = current_identity()
        role = stored_role(identity.email)
        if role is None or role not in allowed:
            current_app.logger.info(
                "Role %r of %s not in %s", role, identity.email, sorted(allowed)
            )
            raise InsufficientPrivilege()

    return gate


require_admin = require_role(ADMIN_ROLE)


def owner_from_query(param: str = "email") -> OwnerResolver:
    def resolve():
        return request.args.get(param)

    return resolve


def owner_from_record(
    collection: str, id_arg: str = "id", owner_fields=("email", "owner")
) -> OwnerResolver:
    """Resolve the owner from a stored record addressed by a path parameter.

    The loaded record is kept on ``g.owned_record`` for the view.
    """

    def resolve():
        object_id = parse_object_id(request.view_args.get(id_arg))
        document = get_db()[collection].find_one({"_id": object_id})
        if document is None:
            raise ResourceNotFound(f"{collection.rstrip('s').capitalize()} not found.")
        g.owned_record = document
        for field in owner_fields:
            value = document.get(field)
            if value:
                return value
        return None

    return resolve


def require_owner(resolve_owner: OwnerResolver, allow_roles=()) -> Gate:
    """Only the resource owner passes, plus callers whose stored role is in ``allow_roles``.

    The role is read from the directory on each request, and only when the
    caller is not the owner.
    """
    allowed = set(allow_roles)

    def gate():
        identity = current_identity()
        owner = resolve_owner()
        if isinstance(owner, str) and owner == identity.email:
            return
        if allowed and stored_role(identity.email) in allowed:
            return
        current_app.logger.info(
            "Ownership mismatch on %s for %s", request.path, identity.email
        )
        raise OwnershipMismatch()

    return gate


def protected(*gates: Gate):
    """Run token verification, then each gate in order, before the view."""

    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            verify_token()
            for gate in gates:
                gate()
            return view(*args, **kwargs)

        return wrapper

    return decorator
