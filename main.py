"""
crudclient entry point
Builds the request layer from settings and probes the remote service
"""

import asyncio
import sys

from loguru import logger

from crudclient.services import ApiError, close_api_client, get_api_client


async def main(path: str = "users") -> None:
    """Main function"""
    logger.info("Starting crudclient...")

    client = get_api_client()
    client.on_unauthorized(lambda failure: logger.info("Signed out, please log in"))

    try:
        if not await client.credentials.validate_security_state():
            logger.warning("Stored credentials are not usable")

        logger.info(f"Fetching {path}...")
        data = await client.get(path)
        logger.info(f"Response: {data}")

    except ApiError as e:
        logger.error(f"Request failed: {e.kind.value} {e.message}")
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    finally:
        logger.info(f"Status: {client.get_cache_status()}")
        await close_api_client()
        logger.info("crudclient stopped")


if __name__ == "__main__":
    asyncio.run(main(*sys.argv[1:2]))
