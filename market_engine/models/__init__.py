from market_engine.models.base import Base  # noqa: F401

from market_engine.models.vehicle import Vehicle  # noqa: F401
from market_engine.models.listing import Listing, ListingStatus  # noqa: F401
from market_engine.models.price_history import PriceHistoryEntry  # noqa: F401
from market_engine.models.watchlist import WatchlistEntry  # noqa: F401
from market_engine.models.notification import Notification, NotificationType  # noqa: F401
from market_engine.models.market_snapshot import MarketSnapshot  # noqa: F401
from market_engine.models.outbox import OutboxEvent  # noqa: F401
