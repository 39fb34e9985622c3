from __future__ import annotations

from fastapi import Depends, Request

from src.config import Settings, settings
from src.db import get_supabase
from src.domain.signed_urls import SignedUrlService
from src.ingestion.meta_webhook import MetaWebhookHandler
from src.media.pipeline import MediaIngestionPipeline
from src.media.storage import MediaStorage
from src.providers.meta.client import MetaProvider
from src.realtime.broadcaster import Broadcaster
from src.store import MessageStore


def get_settings() -> Settings:
    return settings


def get_message_store() -> MessageStore:
    return MessageStore(get_supabase())


def get_meta_provider(app_settings: Settings = Depends(get_settings)) -> MetaProvider:
    return MetaProvider.from_settings(app_settings)


def get_signed_url_service(app_settings: Settings = Depends(get_settings)) -> SignedUrlService:
    return SignedUrlService.from_settings(app_settings)


def get_media_storage(
    app_settings: Settings = Depends(get_settings),
    signer: SignedUrlService = Depends(get_signed_url_service),
) -> MediaStorage:
    return MediaStorage.from_settings(app_settings, signer=signer)


def get_media_pipeline(
    app_settings: Settings = Depends(get_settings),
    store: MessageStore = Depends(get_message_store),
    media_storage: MediaStorage = Depends(get_media_storage),
) -> MediaIngestionPipeline:
    return MediaIngestionPipeline.from_settings(app_settings, store=store, media_storage=media_storage)


def get_broadcaster(request: Request) -> Broadcaster:
    return request.app.state.broadcaster


def get_webhook_handler(
    app_settings: Settings = Depends(get_settings),
    store: MessageStore = Depends(get_message_store),
    provider: MetaProvider = Depends(get_meta_provider),
    media_storage: MediaStorage = Depends(get_media_storage),
    pipeline: MediaIngestionPipeline = Depends(get_media_pipeline),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> MetaWebhookHandler:
    return MetaWebhookHandler(
        store=store,
        provider=provider,
        media_storage=media_storage,
        pipeline=pipeline,
        broadcaster=broadcaster,
        verify_token=app_settings.meta_verify_token,
        app_secret=app_settings.meta_app_secret,
    )
