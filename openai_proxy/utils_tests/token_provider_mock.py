from openai_proxy.oauth.credentials import CredentialError, TokenProvider


class DummyTokenProvider(TokenProvider):
    """Token provider double that counts calls and can be told to fail."""

    def __init__(self, token: str = "provider-token"):
        self.token = token
        self.calls = 0
        self.closed = False
        self.fail = False

    async def get_token(self) -> str:
        self.calls += 1
        if self.fail:
            raise CredentialError("identity endpoint unavailable")
        return self.token

    async def aclose(self) -> None:
        self.closed = True
