import asyncio
import contextlib
import os
import sys
import webbrowser

# Add src to path for running directly
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

from pydantic import SecretStr

from iden.config import ClientConfig
from iden.exceptions import IdenError
from iden.flow import OIDCFlowAsync


async def main() -> None:
    """
    Demonstrates an interactive login using the async flow.
    Includes:
    - A local callback listener on a free port (port 0)
    - PKCE and ID token signature verification against the provider JWKS
    - OpenTelemetry instrumentation (auto-applied to the flow's client)
    """
    print(">>> Starting Async Login Example")

    config = ClientConfig(
        issuer=os.getenv("IDEN_ISSUER", "https://accounts.example.com"),
        client_id=os.getenv("IDEN_CLIENT_ID", "my-cli"),
        client_secret=SecretStr(os.getenv("IDEN_CLIENT_SECRET", "change-me")),
        redirect_url="http://127.0.0.1:0/callback",
        scope="openid profile email",
        use_pkce=True,
        verify_signature=True,
        callback_timeout=120,
    )

    def open_in_browser(url: str) -> None:
        print(f">>> Open this URL to log in:\n    {url}")
        webbrowser.open(url)

    async with OIDCFlowAsync(config) as flow:
        try:
            result = await flow.login(open_in_browser)
        except IdenError as e:
            # Without a real provider this fails at discovery
            print(f">>> Login failed ({type(e).__name__}, exit code {e.exit_code}): {e}")
            return

    print(f">>> Logged in as {result.claims.sub}")
    print(f">>> Userinfo claims: {sorted(result.userinfo)}")


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())
