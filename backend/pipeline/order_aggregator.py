# pipeline/order_aggregator.py
# ============================================================================
# TRUCKSY PAYMENTS — ORDER AGGREGATOR
# ============================================================================
# Turns a client's (item, quantity) requests into a priced PLACED order.
#
# Checks run in a fixed order and the first failure wins:
#   truck exists -> truck open -> client exists -> card attached
#   -> requests non-empty -> per line (qty, item, available, same truck)
#   -> balance covers total
# Nothing is persisted unless every check passes.
# ============================================================================

from typing import Iterable, Union

import structlog
from pydantic import ValidationError

from errors import (
    InsufficientFundsError,
    InvalidRequestError,
    ItemUnavailableError,
    MissingPaymentInstrumentError,
    NotFoundError,
    TruckClosedError,
)
from schemas.domain import (
    LedgerAccount,
    LineRequest,
    Order,
    OrderLine,
    OrderStatus,
    TruckStatus,
    format_minor,
)
from storage.repositories import ITrucksyStore

logger = structlog.get_logger(component="order_aggregator")


class OrderAggregator:

    def __init__(self, store: ITrucksyStore, currency: str = "SAR"):
        self.store = store
        self.currency = currency

    async def build_order(
        self,
        client_id: int,
        truck_id: int,
        requests: Iterable[Union[LineRequest, dict]],
    ) -> tuple[Order, LedgerAccount]:
        """
        Validate, price and persist a new order.

        Returns the stored order (with its id) and the client's ledger
        account, which the caller needs to initiate the charge.
        """
        truck = await self.store.get_truck(truck_id)
        if truck is None:
            raise NotFoundError("Food truck not found", code="TRUCK_NOT_FOUND")
        if truck.status == TruckStatus.CLOSED:
            raise TruckClosedError("Food truck is closed")

        client = await self.store.get_client(client_id)
        if client is None:
            raise NotFoundError("Client not found", code="CLIENT_NOT_FOUND")

        account = await self.store.get_account(client_id)
        if account is None:
            raise MissingPaymentInstrumentError("Add a bank card to continue payment")

        try:
            requests = [
                r if isinstance(r, LineRequest) else LineRequest.model_validate(r)
                for r in (requests or [])
            ]
        except ValidationError as e:
            raise InvalidRequestError(f"Malformed order line: {e.errors()[0]['msg']}") from e
        if not requests:
            raise InvalidRequestError("Order must contain at least one item", code="EMPTY_ORDER")

        lines: dict[int, OrderLine] = {}
        total_minor = 0

        for request in requests:
            if request.quantity <= 0:
                raise InvalidRequestError(
                    f"Quantity must be positive for item {request.item_id}",
                    code="INVALID_QUANTITY",
                )

            item = await self.store.get_item(request.item_id)
            if item is None:
                raise NotFoundError(f"Item {request.item_id} not found", code="ITEM_NOT_FOUND")
            if not item.is_available:
                raise ItemUnavailableError(f"Item {item.name} is not available")
            if item.truck_id != truck_id:
                raise InvalidRequestError(
                    f"Item {item.name} does not belong to this food truck",
                    code="ITEM_NOT_ON_TRUCK",
                )

            existing = lines.get(item.item_id)
            if existing is None:
                lines[item.item_id] = OrderLine(
                    item_id=item.item_id,
                    item_name=item.name,
                    quantity=request.quantity,
                    unit_price_minor=item.price_minor,
                )
                total_minor += item.price_minor * request.quantity
            else:
                # Merged lines keep the first-seen price
                lines[item.item_id] = existing.model_copy(
                    update={"quantity": existing.quantity + request.quantity}
                )
                total_minor += existing.unit_price_minor * request.quantity

        if not account.can_cover(total_minor):
            logger.info("order_rejected_insufficient_funds",
                        client_id=client_id,
                        truck_id=truck_id,
                        total_minor=total_minor)
            raise InsufficientFundsError(
                f"Insufficient funds. Required: {format_minor(total_minor, self.currency)}"
            )

        order = await self.store.add_order(Order(
            client_id=client_id,
            truck_id=truck_id,
            status=OrderStatus.PLACED,
            lines=list(lines.values()),
            total_price_minor=total_minor,
        ))

        logger.info("order_created",
                    order_id=order.order_id,
                    client_id=client_id,
                    truck_id=truck_id,
                    line_count=len(order.lines),
                    total_minor=total_minor)
        return order, account
