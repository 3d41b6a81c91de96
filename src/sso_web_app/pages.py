"""
Minimal HTML pages. Every interpolated value is escaped.
"""

from html import escape
from typing import Optional

from .models import Provider, User

_PROVIDER_LABELS = {
    Provider.MICROSOFT: "Sign in with Microsoft 365",
    Provider.GITHUB: "Sign in with GitHub",
}


def layout(title: Optional[str], body: str) -> str:
    full_title = "SSO Web App" + (f" - {escape(title)}" if title else "")
    return (
        "<!DOCTYPE html>\n"
        '<html lang="en">\n'
        "<head>\n"
        '<meta charset="utf-8">\n'
        '<meta name="viewport" content="width=device-width, initial-scale=1">\n'
        f"<title>{full_title}</title>\n"
        "</head>\n"
        f"<body>\n{body}\n</body>\n"
        "</html>\n"
    )


def login_page(providers: list[Provider], message: Optional[str] = None) -> str:
    links = "\n".join(
        f'<li><a class="oauth-button {p.value}" href="/auth/{p.value}">'
        f"{escape(_PROVIDER_LABELS[p])}</a></li>"
        for p in providers
    )
    notice = f'<p class="error" role="alert">{escape(message)}</p>\n' if message else ""
    return layout(
        "Login",
        f"<h1>Welcome to SSO Web App</h1>\n{notice}<ul>\n{links}\n</ul>",
    )


def dashboard_page(user: User, csrf_token: str) -> str:
    email = f"<p>Email: {escape(user.email)}</p>\n" if user.email else ""
    return layout(
        "Dashboard",
        f"<h1>Welcome, {escape(user.display_name)}</h1>\n"
        f"<p>Signed in with {escape(user.provider.value)}</p>\n"
        f"{email}"
        '<form method="post" action="/logout">\n'
        f'<input type="hidden" name="csrf_token" value="{escape(csrf_token)}">\n'
        '<button type="submit">Log out</button>\n'
        "</form>",
    )


def error_page(status: int, message: str) -> str:
    return layout(
        "Error",
        f"<h1>Error {status}</h1>\n<p>{escape(message)}</p>\n"
        '<p><a href="/">Return to Home</a></p>',
    )
