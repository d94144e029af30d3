"""
Cart/checkout owner identity

Exactly one of user_id (authenticated) or session_id (anonymous) is set.
Services take an Identity explicitly and push ownership into the query
predicate via ``owner_clause``.
"""
from dataclasses import dataclass
from typing import Optional

from storefront.core.exceptions import IdentityRequiredError


@dataclass(frozen=True)
class Identity:
    user_id: Optional[str] = None
    session_id: Optional[str] = None

    def __post_init__(self):
        if (self.user_id is None) == (self.session_id is None):
            raise IdentityRequiredError(
                "Exactly one of user id or anonymous session id is required"
            )

    @classmethod
    def for_user(cls, user_id) -> "Identity":
        return cls(user_id=str(user_id))

    @classmethod
    def for_session(cls, session_id: str) -> "Identity":
        return cls(session_id=session_id)

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def key(self) -> str:
        """Stable string used for lock keys and log lines."""
        if self.user_id is not None:
            return f"user:{self.user_id}"
        return f"session:{self.session_id}"

    def owner_clause(self, model):
        """SQL predicate restricting ``model`` rows to this identity."""
        if self.user_id is not None:
            return model.user_id == self.user_id
        session_column = getattr(model, "session_id", None)
        if session_column is None:
            session_column = model.guest_session_id
        return session_column == self.session_id

    def owner_fields(self, model) -> dict:
        """Column values stamping a new ``model`` row with this owner."""
        if self.user_id is not None:
            return {"user_id": self.user_id}
        if hasattr(model, "session_id"):
            return {"session_id": self.session_id}
        return {"guest_session_id": self.session_id}

    def __str__(self) -> str:
        return self.key
