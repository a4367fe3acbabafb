"""
venuelink demo entry point.

Checks the API, loads the venue once through the cached read path and
follows the venue's realtime channel until interrupted.

    VENUE_ID=... ACCESS_TOKEN=... REFRESH_TOKEN=... python main.py
"""

import asyncio
import os

from loguru import logger

from venuelink.realtime import (
    ChannelEndpoint,
    ChannelManager,
    ConnectionState,
    InboundType,
)
from venuelink.services import (
    ApiClient,
    Credential,
    CredentialCoordinator,
    InMemoryCredentialStore,
    NetworkContext,
    ServiceError,
    user_message,
)
from venuelink.settings import global_settings


def log_frame(frame) -> None:
    logger.info(f"{frame.type}: {frame.payload}")


def log_state(new: ConnectionState, old: ConnectionState) -> None:
    logger.info(f"Channel {old.value} -> {new.value}")


async def main() -> None:
    venue_id = os.getenv("VENUE_ID", "demo-venue")
    token = os.getenv("ACCESS_TOKEN")
    logger.info(f"Starting venuelink against {global_settings.api_base_url}")

    store = InMemoryCredentialStore(
        Credential.from_token(token, refresh_token=os.getenv("REFRESH_TOKEN"))
        if token
        else None
    )

    async with NetworkContext(global_settings) as context:
        coordinator = CredentialCoordinator(
            store,
            refresh_margin=global_settings.token_refresh_margin,
            scheduler=context.scheduler,
        )
        coordinator.on_session_expired(lambda reason: logger.warning(f"Logged out: {reason}"))

        channel = ChannelManager(
            ChannelEndpoint("venue", venue_id),
            coordinator,
            settings=global_settings,
            scheduler=context.scheduler,
        )
        for message_type in InboundType:
            if message_type != InboundType.PONG:
                channel.subscribe(message_type, log_frame)
        channel.on_state_change(log_state)

        async with ApiClient(context, coordinator) as api:
            try:
                if not await api.health_check():
                    logger.warning("API health check failed")
                venue = await api.get(f"/venues/{venue_id}")
                logger.info(f"Venue loaded: {venue.data}")

                if store.get() is not None:
                    coordinator.start_auto_refresh()
                await channel.connect()
                await channel.request_venue_status()

                logger.info("venuelink is running. Press Ctrl+C to stop.")
                while channel.state != ConnectionState.ERROR:
                    await asyncio.sleep(60)
                    logger.debug(api.get_health_status())

            except ServiceError as e:
                logger.error(f"{e.code}: {e} ({user_message(e)})")
            finally:
                coordinator.stop_auto_refresh()
                await channel.close()

    logger.info("venuelink stopped")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
