"""Adapter factory: builds the live clients and the sync engine from settings."""

from glucose.adapters.dexcom_client import DexcomShareClient
from glucose.adapters.libreview_client import LibreViewClient
from glucose.syncer import GlucoseSyncer
from shared.config import Settings, settings as default_settings


def build_source(cfg: Settings | None = None) -> LibreViewClient:
    cfg = cfg or default_settings
    return LibreViewClient(
        cfg.source_email,
        cfg.source_password,
        cfg.source_region,
        retry_attempts=cfg.libreview_retry_attempts,
        retry_base_delay=cfg.libreview_retry_base_seconds,
        product=cfg.libreview_product,
        version=cfg.libreview_version,
    )


def build_publisher(cfg: Settings | None = None) -> DexcomShareClient:
    cfg = cfg or default_settings
    return DexcomShareClient(
        cfg.dest_username,
        cfg.dest_password,
        cfg.dest_region,
        rate_limit_cooldown=cfg.dexcom_rate_limit_cooldown_seconds,
        rate_limit_attempts=cfg.dexcom_rate_limit_attempts,
    )


def build_syncer(cfg: Settings | None = None) -> GlucoseSyncer:
    """Wire both live clients into a GlucoseSyncer configured from settings."""
    cfg = cfg or default_settings
    return GlucoseSyncer(
        build_source(cfg),
        build_publisher(cfg),
        max_readings=cfg.max_readings_per_sync,
        sync_interval_seconds=cfg.sync_interval_seconds,
        serial_number=cfg.serial_number,
        dedup_window_hours=cfg.dedup_window_hours,
        verify_uploads=cfg.verify_uploads,
    )
