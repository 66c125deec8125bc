"""Wiring helpers: codec loading and price-source construction."""

from __future__ import annotations

from importlib import import_module

import httpx
import structlog

from src.chain.codec import ProgramCodec
from src.core.config import OracleConfig
from src.keeper.exceptions import ConfigError
from src.keeper.price_sources import DexScreenerSource, JupiterSource, PriceSource

logger = structlog.stdlib.get_logger()


def load_codec(path: str) -> ProgramCodec:
    """Instantiate the program codec named by ``"package.module:factory"``.

    *factory* may be a ProgramCodec subclass or any zero-argument callable
    returning a ProgramCodec.

    Raises:
        ConfigError: Path empty or malformed, target missing, or the
            factory does not produce a ProgramCodec.
    """
    if not path or ":" not in path:
        raise ConfigError(
            "keeper.codec (KEEPER_CODEC) must name a codec factory as 'module:attribute'"
        )
    module_name, _, attr = path.partition(":")
    try:
        module = import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import codec module {module_name!r}: {exc}") from exc

    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ConfigError(f"Codec factory {path!r} not found or not callable")

    codec = factory()
    if not isinstance(codec, ProgramCodec):
        raise ConfigError(
            f"Codec factory {path!r} returned {type(codec).__name__}, not a ProgramCodec"
        )
    logger.info("codec_loaded", codec=path)
    return codec


def build_price_sources(
    config: OracleConfig,
    http: httpx.AsyncClient | None = None,
) -> tuple[httpx.AsyncClient, list[PriceSource]]:
    """HTTP price sources in fallback order: DexScreener, then Jupiter.

    Returns the shared client so the caller can close it at shutdown.
    """
    client = http or httpx.AsyncClient(timeout=config.request_timeout_secs)
    sources: list[PriceSource] = [
        DexScreenerSource(client, config.dexscreener_url),
        JupiterSource(client, config.jupiter_url),
    ]
    return client, sources
