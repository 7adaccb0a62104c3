"""
Inventory Manager - Product stock with optimistic version checks.

Every stock mutation is a single conditional UPDATE keyed on the version read
just before it. A lost race re-reads and retries a bounded number of times.
"""

from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from commerce.config import settings
from commerce.db.models import Product
from commerce.exceptions import (
    CommerceError,
    ConcurrentModificationError,
    DataIntegrityError,
    OutOfStockError,
    ProductNotFoundError,
    ProductUnavailableError,
    ValidationError,
)
from commerce.models.api import ProductStatus
from commerce.models.domain import ProductData
from commerce.observability.metrics import metrics, track_operation
from commerce.services.locking import keyed_locks

logger = get_logger(__name__)


def _validate_quantity(quantity: int) -> None:
    """Quantities are positive integers."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("quantity", f"quantity must be a positive integer, got {quantity!r}")


class InventoryManager:
    """Service for reading and mutating product stock."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session

    async def get_product(self, product_id: UUID) -> ProductData:
        """
        Get a product snapshot.

        Raises:
            ProductNotFoundError: product doesn't exist
        """
        product = await self._load_product(product_id)
        return self._product_to_domain(product)

    async def check_availability(self, product_id: UUID, quantity: int) -> ProductData:
        """
        Advisory stock check. Nothing is reserved; decrease_stock re-checks.

        Raises:
            ValidationError: quantity is not a positive integer
            ProductNotFoundError: product doesn't exist
            OutOfStockError: stock is lower than quantity
        """
        _validate_quantity(quantity)

        product = await self._load_product(product_id)
        if product.stock_quantity < quantity:
            raise OutOfStockError(product_id, quantity, product.stock_quantity)

        return self._product_to_domain(product)

    async def validate_products_for_order(self, product_ids: Sequence[UUID]) -> list[ProductData]:
        """
        Check that every product exists and is on sale.

        Returns snapshots in the order of product_ids.

        Raises:
            ProductNotFoundError: a product doesn't exist
            ProductUnavailableError: a product is not ACTIVE
        """
        stmt = select(Product).where(Product.id.in_(set(product_ids)))
        result = await self.session.execute(stmt)
        products = {product.id: product for product in result.scalars()}

        snapshots: list[ProductData] = []
        for product_id in product_ids:
            product = products.get(product_id)
            if product is None:
                raise ProductNotFoundError(product_id)
            if product.status != ProductStatus.ACTIVE:
                raise ProductUnavailableError(
                    product_id, product.name, ProductStatus(product.status).value
                )
            snapshots.append(self._product_to_domain(product))

        return snapshots

    async def decrease_stock(self, product_id: UUID, quantity: int) -> ProductData:
        """
        Take quantity units out of stock.

        The stock check is authoritative here: the conditional UPDATE only
        matches while stock >= quantity. Stock reaching zero marks the
        product OUT_OF_STOCK.

        Raises:
            ValidationError: quantity is not a positive integer
            ProductNotFoundError: product doesn't exist
            OutOfStockError: stock is lower than quantity
            ConcurrentModificationError: version conflicts outlasted the retries
        """
        _validate_quantity(quantity)

        def next_status(product: Product, new_stock: int) -> ProductStatus:
            if new_stock == 0:
                return ProductStatus.OUT_OF_STOCK
            return ProductStatus(product.status)

        with track_operation("stock_decrease"):
            snapshot = await self._update_stock(product_id, -quantity, next_status)

        logger.info(
            "stock_decreased",
            product_id=str(product_id),
            quantity=quantity,
            stock_after=snapshot.stock_quantity,
            version=snapshot.version,
        )
        return snapshot

    async def restore_stock(self, product_id: UUID, quantity: int) -> ProductData:
        """
        Put quantity units back into stock.

        A product that was OUT_OF_STOCK becomes ACTIVE again; INACTIVE
        products stay INACTIVE.

        Raises:
            ValidationError: quantity is not a positive integer
            ProductNotFoundError: product doesn't exist
            ConcurrentModificationError: version conflicts outlasted the retries
        """
        _validate_quantity(quantity)

        def next_status(product: Product, new_stock: int) -> ProductStatus:
            if product.status == ProductStatus.OUT_OF_STOCK and new_stock > 0:
                return ProductStatus.ACTIVE
            return ProductStatus(product.status)

        with track_operation("stock_restore"):
            snapshot = await self._update_stock(product_id, quantity, next_status)

        logger.info(
            "stock_restored",
            product_id=str(product_id),
            quantity=quantity,
            stock_after=snapshot.stock_quantity,
            version=snapshot.version,
        )
        return snapshot

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _update_stock(
        self,
        product_id: UUID,
        delta: int,
        next_status: Callable[[Product, int], ProductStatus],
    ) -> ProductData:
        """Version-checked stock update with bounded retries."""
        operation = "decrease" if delta < 0 else "restore"
        attempts = settings.optimistic_retry_attempts

        async with keyed_locks.hold(("product", product_id)):
            try:
                for attempt in range(1, attempts + 1):
                    product = await self._load_product(product_id)
                    expected_version = product.version
                    new_stock = product.stock_quantity + delta

                    if new_stock < 0:
                        raise OutOfStockError(product_id, -delta, product.stock_quantity)

                    stmt = (
                        update(Product)
                        .where(
                            Product.id == product_id,
                            Product.version == expected_version,
                            Product.stock_quantity + delta >= 0,
                        )
                        .values(
                            stock_quantity=Product.stock_quantity + delta,
                            version=Product.version + 1,
                            status=next_status(product, new_stock),
                            updated_at=datetime.now(UTC),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    result = await self.session.execute(stmt)

                    if result.rowcount == 1:
                        verified = await self._load_product(product_id)
                        if verified.version != expected_version + 1:
                            metrics.db_write_verifications_total.labels(success="False").inc()
                            raise DataIntegrityError(
                                f"Product {product_id} version mismatch: expected "
                                f"{expected_version + 1}, got {verified.version}"
                            )
                        metrics.db_write_verifications_total.labels(success="True").inc()
                        await self.session.commit()
                        metrics.record_stock_operation(operation, True)
                        return self._product_to_domain(verified)

                    # Another writer bumped the version first
                    await self.session.rollback()
                    metrics.record_optimistic_retry("product")
                    logger.warning(
                        "stock_version_conflict",
                        product_id=str(product_id),
                        attempt=attempt,
                        expected_version=expected_version,
                    )
            except CommerceError:
                await self.session.rollback()
                metrics.record_stock_operation(operation, False)
                raise
            except Exception:
                await self.session.rollback()
                raise

        metrics.record_stock_operation(operation, False)
        raise ConcurrentModificationError("Product", product_id, attempts)

    async def _load_product(self, product_id: UUID) -> Product:
        """Read the current product row, bypassing stale identity-map state."""
        stmt = (
            select(Product)
            .where(Product.id == product_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        product = result.scalar_one_or_none()
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    def _product_to_domain(self, product: Product) -> ProductData:
        """Convert ORM product to domain model."""
        return ProductData(
            product_id=product.id,
            name=product.name,
            price=product.price,
            stock_quantity=product.stock_quantity,
            status=ProductStatus(product.status),
            version=product.version,
        )
