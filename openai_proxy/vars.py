import os
from dataclasses import dataclass
from typing import Optional

import httpx

SERVICE_NAME = os.getenv("SERVICE_NAME", "azure-openai-proxy")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

AZURE_OPENAI_API_ENDPOINT = os.getenv("AZURE_OPENAI_API_ENDPOINT", "")
HOST = os.getenv("HOST", "0.0.0.0")
PORT = os.getenv("PORT", "3000")

# "azure" uses DefaultAzureCredential, "static" a fixed token for local upstreams
TOKEN_PROVIDER = os.getenv("TOKEN_PROVIDER", "azure").lower()
TOKEN_SCOPE = os.getenv("TOKEN_SCOPE", "https://cognitiveservices.azure.com/.default")
TOKEN_REFRESH_MARGIN_SECONDS = int(os.getenv("TOKEN_REFRESH_MARGIN_SECONDS", "300"))
STATIC_BEARER_TOKEN = os.getenv("STATIC_BEARER_TOKEN", "")

# Empty means no application timeout, streaming completions can run for minutes
PROXY_TIMEOUT = os.getenv("PROXY_TIMEOUT", "")

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
METRICS_PATH = os.getenv("METRICS_PATH", "")


class ConfigurationError(Exception):
    """Raised when required configuration is missing or malformed."""


@dataclass(frozen=True)
class Settings:
    upstream_base: httpx.URL
    host: str
    port: int
    timeout: Optional[float]


def parse_upstream_endpoint(raw: Optional[str]) -> httpx.URL:
    """Validate the upstream endpoint and return it as an absolute URL."""
    if not raw or not raw.strip():
        raise ConfigurationError("AZURE_OPENAI_API_ENDPOINT is not set.")
    try:
        url = httpx.URL(raw.strip())
    except httpx.InvalidURL as e:
        raise ConfigurationError(
            f"AZURE_OPENAI_API_ENDPOINT is not a valid URL: {raw}"
        ) from e
    if url.scheme not in ("http", "https") or not url.host:
        raise ConfigurationError(
            f"AZURE_OPENAI_API_ENDPOINT must be an absolute http(s) URL: {raw}"
        )
    return url


def _parse_port(raw: str) -> int:
    try:
        port = int(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"PORT must be an integer: {raw}") from e
    if not 0 < port < 65536:
        raise ConfigurationError(f"PORT out of range: {port}")
    return port


def _parse_timeout(raw: str) -> Optional[float]:
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"PROXY_TIMEOUT must be a number: {raw}") from e


def load_settings() -> Settings:
    return Settings(
        upstream_base=parse_upstream_endpoint(AZURE_OPENAI_API_ENDPOINT),
        host=HOST,
        port=_parse_port(PORT),
        timeout=_parse_timeout(PROXY_TIMEOUT),
    )
