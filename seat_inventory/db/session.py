from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from seat_inventory.config import settings


DATABASE_URL = str(settings.DATABASE_URL)

# create async engine
engine = create_async_engine(DATABASE_URL, echo=settings.DEBUG, pool_pre_ping=True)

# session factory
async_session = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
