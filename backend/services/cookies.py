"""Session cookie policy."""

from dataclasses import dataclass
from functools import lru_cache

from fastapi import Response

from config import get_settings
from services.tokens import TokenPair


@dataclass(frozen=True)
class CookiePolicy:
    """
    Attributes of the access and refresh cookies.

    Built once from settings and used by every code path that sets or clears
    session cookies, so issuance and clearing can't drift apart.
    """

    access_name: str = "access_token"
    refresh_name: str = "refresh_token"
    access_max_age: int = 15 * 60
    refresh_max_age: int = 7 * 24 * 60 * 60
    secure: bool = False
    samesite: str = "strict"
    httponly: bool = True
    path: str = "/"

    @classmethod
    def from_settings(cls, settings) -> "CookiePolicy":
        return cls(
            access_name=settings.ACCESS_COOKIE_NAME,
            refresh_name=settings.REFRESH_COOKIE_NAME,
            access_max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            refresh_max_age=settings.REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
            secure=settings.effective_cookie_secure,
            samesite=settings.COOKIE_SAMESITE.lower(),
            path=settings.COOKIE_PATH,
        )

    def _set(self, response: Response, key: str, value: str, max_age: int) -> None:
        response.set_cookie(
            key=key,
            value=value,
            max_age=max_age,
            httponly=self.httponly,
            secure=self.secure,
            samesite=self.samesite,
            path=self.path,
        )

    def set_session_cookies(self, response: Response, tokens: TokenPair) -> None:
        self._set(response, self.access_name, tokens.access.token, self.access_max_age)
        self._set(response, self.refresh_name, tokens.refresh.token, self.refresh_max_age)

    def clear_session_cookies(self, response: Response) -> None:
        for key in (self.access_name, self.refresh_name):
            response.delete_cookie(
                key=key,
                path=self.path,
                secure=self.secure,
                httponly=self.httponly,
                samesite=self.samesite,
            )


@lru_cache()
def get_cookie_policy() -> CookiePolicy:
    return CookiePolicy.from_settings(get_settings())
