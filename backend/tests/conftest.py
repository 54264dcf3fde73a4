"""
Shared fixtures: a throwaway SQLite database per test and helpers to seed
integrations, ad accounts and product links.
"""

import uuid
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from adspend.database import Base
from adspend.models import Integration, AdAccount, Product, ProductAdAccount, UserSettings
import adspend.models  # noqa: F401


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def seed(session_factory):
    """
    Returns an async helper that creates one integration with the given ad
    accounts, each linked to ``products_per_account`` new products.
    """

    async def _seed(
        account_ids=("111",),
        products_per_account: int = 1,
        user_id: uuid.UUID | None = None,
        timezone: str | None = None,
        access_token: str = "plain-token",
        currency: str | None = None,
    ) -> dict:
        user_id = user_id or uuid.uuid4()
        integration_id = uuid.uuid4()
        links: dict[str, list[ProductAdAccount]] = {}
        async with session_factory() as session, session.begin():
            session.add(Integration(
                id=integration_id,
                user_id=user_id,
                name="Main",
                access_token_encrypted=access_token,
                is_active=True,
            ))
            if timezone:
                session.add(UserSettings(user_id=user_id, timezone=timezone))
            for external_id in account_ids:
                account_id = uuid.uuid4()
                session.add(AdAccount(
                    id=account_id,
                    integration_id=integration_id,
                    external_account_id=external_id,
                    name=f"Account {external_id}",
                    currency=currency,
                    status="active",
                ))
                links[external_id] = []
                for i in range(products_per_account):
                    product_id = uuid.uuid4()
                    session.add(Product(id=product_id, user_id=user_id, name=f"Product {external_id}-{i}"))
                    link = ProductAdAccount(id=uuid.uuid4(), product_id=product_id, ad_account_id=account_id)
                    session.add(link)
                    links[external_id].append(link)
        return {"user_id": user_id, "integration_id": integration_id, "links": links}

    return _seed
