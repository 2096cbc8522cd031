"""
Periodic maintenance pass, meant to be run from cron or a scheduler:

    python -m shopcart.jobs
"""
import logging
from typing import Dict, Optional

from shopcart.config import Config
from shopcart.container import Services, build_services
from shopcart.log import configure_logging

logger = logging.getLogger(__name__)


def run_cleanup(services: Optional[Services] = None) -> Dict[str, int]:
    """Expired holds first, so deleted carts no longer carry stock"""
    services = services or build_services()
    cart_service = services.cart_service

    results = {
        "expired_reservations": cart_service.cleanup_expired_reservations(),
        "expired_carts": cart_service.cleanup_expired_carts(),
        "abandoned_carts": len(cart_service.get_abandoned_carts()),
        "replenished_templates": services.saved_carts.process_auto_replenish(),
    }

    logger.info(
        "Cleanup complete: "
        + ", ".join(f"{name}={count}" for name, count in results.items())
    )
    return results


def main() -> None:
    configure_logging()
    Config.load_redis_secrets()
    services = build_services()
    try:
        run_cleanup(services)
    finally:
        services.redis.close()


if __name__ == "__main__":
    main()
