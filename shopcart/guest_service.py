"""
Guest checkout support: anonymous sessions that own a cart until sign-in.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from shopcart.cart import Cart
from shopcart.cart_service import CartService
from shopcart.exceptions import NotFoundError
from shopcart.log import hash_identifier
from shopcart.models import CartIdentifier, GuestMetadata, GuestSession, utcnow
from shopcart.repositories import GuestSessionRepository

logger = logging.getLogger(__name__)


class GuestService:
    """Service for guest sessions"""

    def __init__(
        self,
        sessions: GuestSessionRepository,
        cart_service: CartService,
        clock: Callable[[], datetime] = utcnow
    ):
        self.sessions = sessions
        self.cart_service = cart_service
        self.clock = clock

    def create_guest_cart(self, session_id: str, metadata: Optional[GuestMetadata] = None) -> Cart:
        """
        Get or create the cart for a guest session. Calling it again for the
        same session returns the same cart and only refreshes last activity.
        """
        now = self.clock()
        session = self.sessions.get(session_id)

        if session is not None and session.cart_id:
            cart = self.cart_service.carts.get(session.cart_id)
            if cart is not None:
                session.last_activity = now
                self.sessions.save(session)
                return cart

        cart = self.cart_service.find_or_create(CartIdentifier(session_id=session_id))

        if session is None:
            metadata = metadata or GuestMetadata()
            session = GuestSession(session_id=session_id, created_at=now, **metadata.model_dump())
            logger.info(f"Guest session started: {hash_identifier(session_id)}")

        session.cart_id = cart.id
        session.last_activity = now
        self.sessions.save(session)
        return cart

    def convert_guest_to_user(self, session_id: str, user_id: str) -> Optional[Cart]:
        """Record the sign-in on the guest session, then fold its cart into the user's"""
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Guest session not found: {hash_identifier(session_id)}")

        now = self.clock()
        session.converted_to_user = user_id
        session.conversion_date = now
        session.last_activity = now
        self.sessions.save(session)

        cart = self.cart_service.merge_carts(user_id, session_id)
        logger.info(f"Guest {hash_identifier(session_id)} converted to user {hash_identifier(user_id)}")
        return cart
