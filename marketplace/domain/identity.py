from dataclasses import dataclass


@dataclass(frozen=True)
class Identity:
    """Who is asking, as handed to us by the identity provider."""

    user_id: int | None = None
    cart_token: str | None = None
    store_id: int | None = None

