"""Database connection, session and transaction management."""
from contextlib import contextmanager
from decimal import Decimal
from typing import Generator, Iterator
import logging

from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker, Session

from config import DATABASE_URL, LOCK_TIMEOUT_MS, SEED_DATA
from errors import LockTimeout
from models import Base, Product, User
from monitoring import lock_timeouts_counter

logger = logging.getLogger(__name__)

# lock_not_available, deadlock_detected
LOCK_ERROR_CODES = {"55P03", "40P01"}

# Create engine with connection pool settings
engine = create_engine(
    DATABASE_URL,
    pool_size=10,
    max_overflow=20,  # Burst traffic around checkout
    pool_pre_ping=True,  # Verify connections before use
    pool_recycle=3600,  # Recycle connections after 1 hour
    pool_timeout=30,  # Wait max 30 seconds for a connection
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for getting database session.

    Yields:
        Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _pgcode(exc: OperationalError):
    return getattr(exc.orig, "pgcode", None)


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """
    Run a unit of work on the given session.

    Commits when the block exits normally and rolls back on every other
    exit path. On PostgreSQL the lock wait is bounded by LOCK_TIMEOUT_MS;
    lock timeouts and deadlocks are raised as LockTimeout.

    Args:
        db: Request-scoped database session

    Yields:
        The same session
    """
    try:
        if db.get_bind().dialect.name == "postgresql":
            db.execute(text(f"SET LOCAL lock_timeout = {int(LOCK_TIMEOUT_MS)}"))
        yield db
        db.commit()
    except OperationalError as e:
        db.rollback()
        if _pgcode(e) in LOCK_ERROR_CODES:
            lock_timeouts_counter.add(1, {"pgcode": _pgcode(e)})
            logger.warning("Row lock wait aborted", extra={
                "pgcode": _pgcode(e),
                "lock_timeout_ms": LOCK_TIMEOUT_MS
            })
            raise LockTimeout() from e
        raise
    except Exception:
        db.rollback()
        raise


def init_db() -> None:
    """Initialize database tables and seed data."""
    Base.metadata.create_all(bind=engine)

    if not SEED_DATA:
        return

    db = SessionLocal()
    try:
        if db.query(Product).count() == 0:
            products = [
                Product(name="Aero Road Frame", subtitle="Carbon, rim brake", type="Frames",
                        price=Decimal("1899.00"), stock=12),
                Product(name="Gravel Wheelset", subtitle="700c tubeless ready", type="Wheels",
                        price=Decimal("749.00"), stock=20),
                Product(name="Clipless Pedals", subtitle="SPD-SL compatible", type="Components",
                        price=Decimal("129.00"), stock=80),
                Product(name="Bib Shorts", subtitle="Summer weight", type="Apparel",
                        price=Decimal("99.00"), stock=150),
                Product(name="Helmet MIPS", subtitle="Road, size M", type="Accessories",
                        price=Decimal("189.00"), stock=45),
                Product(name="Floor Pump", subtitle="Presta/Schrader", type="Tools",
                        price=Decimal("59.00"), stock=60),
            ]
            db.add_all(products)
            db.commit()
            logger.info("Seeded database with sample products")

        if db.query(User).filter(User.role == "admin").count() == 0:
            db.add(User(email="admin@storefront.local", name="Store Admin", role="admin"))
            db.commit()
            logger.info("Seeded database with admin user")
    finally:
        db.close()
