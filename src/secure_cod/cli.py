"""
Command-line interface for the Secure COD engine.
"""

import argparse
import sys
from typing import Any, Dict, List, Optional, Tuple

from . import __version__
from .engine import OrderEngine
from .errors import EngineError
from .payments.gateway import RazorpayGateway
from .payments.state_machine import ACTIONS
from .reconciliation.engine import LEADS_VIEW, ORDERS_VIEW
from .reconciliation.repository import MongoOrderStore
from .utils.config import Config
from .utils.logging import setup_logging
from .utils.money import format_amount


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser."""
    parser = argparse.ArgumentParser(
        description="Secure COD - Order Payment Reconciliation & Authorization Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  secure-cod orders --source leads
  secure-cod transition --order-code "#SMRT-1234" --action void-self
  secure-cod transition --order-code "#SMRT-1234" --action charge-fee --amount 150
  secure-cod discount --product-id 8812 --vendor Acme --unit-price 1000 --quantity 1
  secure-cod cancel-check --order-code "#SMRT-1234"
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Secure COD {__version__}",
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    parser.add_argument(
        "--log-file",
        help="Log file path",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        help="Available commands",
    )

    orders_parser = subparsers.add_parser(
        "orders",
        help="List canonical orders after reconciliation",
    )
    orders_parser.add_argument(
        "--source",
        choices=[ORDERS_VIEW, LEADS_VIEW, "all"],
        default="all",
        help="Which view to list (default: all)",
    )

    transition_parser = subparsers.add_parser(
        "transition",
        help="Apply a payment action to an order",
    )
    transition_parser.add_argument("--order-code", required=True, help="Business order code")
    transition_parser.add_argument("--action", required=True, choices=list(ACTIONS), help="Payment action")
    transition_parser.add_argument("--amount", help="Fee, refund or authorized amount")
    transition_parser.add_argument("--cancellation-code", help="Cancellation ID for void-admin")
    transition_parser.add_argument("--reason", help="Reason recorded on the order")
    transition_parser.add_argument("--payment-id", help="Gateway payment id (authorize)")
    transition_parser.add_argument("--gateway-order-id", help="Gateway order id (authorize)")
    transition_parser.add_argument("--signature", help="Checkout callback signature (authorize)")

    discount_parser = subparsers.add_parser(
        "discount",
        help="Resolve the discount for a product and optionally price it",
    )
    discount_parser.add_argument("--product-id", help="Product id")
    discount_parser.add_argument("--vendor", help="Vendor name")
    discount_parser.add_argument("--collection", help="Collection name")
    discount_parser.add_argument("--link-discount", help="Discount percent carried on the checkout link")
    discount_parser.add_argument("--unit-price", help="Unit price to quote")
    discount_parser.add_argument("--quantity", type=int, default=1, help="Quantity to quote (default: 1)")
    discount_parser.add_argument(
        "--payment-method",
        default="Secure Charge on Delivery",
        help="Payment method for the quote (default: Secure Charge on Delivery)",
    )

    cancel_parser = subparsers.add_parser(
        "cancel-check",
        help="Check whether an order can still be self-cancelled",
    )
    cancel_parser.add_argument("--order-code", required=True, help="Business order code")

    return parser


def build_engine(config: Config) -> OrderEngine:
    """Wire the engine to MongoDB and, when keys are configured, to Razorpay."""
    store = MongoOrderStore(url=config.get("mongo_url"), db_name=config.get("mongo_db"))
    store.connect()
    gateway = None
    if config.get("razorpay_key_id") and config.get("razorpay_key_secret"):
        gateway = RazorpayGateway(
            key_id=config.get("razorpay_key_id"),
            key_secret=config.get("razorpay_key_secret"),
            timeout=config.get("gateway_timeout"),
            currency=config.get("currency"),
        )
    return OrderEngine(store, gateway, config)


def print_box(lines: List[Tuple[str, Any]]) -> None:
    label_width = max(len(lbl) for lbl, _ in lines)
    inner_width = max(len(f" {lbl.ljust(label_width)} : {val}") for lbl, val in lines)
    print("┌" + "─" * inner_width + "┐")
    for lbl, val in lines:
        line = f" {lbl.ljust(label_width)} : {val}"
        print(f"│{line.ljust(inner_width)}│")
    print("└" + "─" * inner_width + "┘")


def list_orders(engine: OrderEngine, source: str) -> None:
    orders = engine.get_unified_orders(None if source == "all" else source)
    print_box([("View", source.upper()), ("Orders", len(orders))])
    if not orders:
        print("\nNo orders found.")
        return

    header = f"{'Order':<18}{'Status':<18}{'Price':>12}  {'Source':<18}{'Date'}"
    print(f"\n{header}")
    print("-" * len(header))
    for order in orders:
        print(
            f"{order['businessOrderCode']:<18}{str(order.get('paymentStatus', '')):<18}"
            f"{str(order.get('price', '')):>12}  {str(order.get('source', '')):<18}{order.get('date', '')}"
        )


def run_transition(engine: OrderEngine, args: argparse.Namespace) -> None:
    params: Dict[str, Any] = {
        "amount": args.amount,
        "code": args.cancellation_code,
        "reason": args.reason,
        "payment_id": args.payment_id,
        "gateway_order_id": args.gateway_order_id,
        "signature": args.signature,
    }
    params = {key: value for key, value in params.items() if value is not None}
    order = engine.transition(args.order_code, args.action, params)

    lines = [
        ("Order", order["businessOrderCode"]),
        ("Action", args.action),
        ("Status", order["paymentStatus"]),
    ]
    for label, key in (
        ("Cancellation", "cancellationStatus"),
        ("Fee", "cancellationFee"),
        ("Released", "releasedAmount"),
        ("Fee refund", "feeRefundAmount"),
        ("Refund", "refundAmount"),
        ("Gateway ref", "refundId"),
        ("Release ref", "releaseId"),
        ("Capture ref", "captureId"),
        ("Fee capture ref", "feeCaptureId"),
        ("Fee refund ref", "feeRefundId"),
    ):
        if order.get(key):
            lines.append((label, order[key]))
    print_box(lines)


def show_discount(engine: OrderEngine, args: argparse.Namespace) -> None:
    rule = engine.get_discount_for_order(args.product_id, args.vendor, args.collection, args.link_discount)
    lines = [
        ("Rule", rule.id if rule else "none"),
        ("Discount", f"{rule.discount_percent}%" if rule else "0%"),
    ]
    if args.unit_price is not None:
        quote = engine.quote(
            args.unit_price,
            args.quantity,
            args.payment_method,
            product_id=args.product_id,
            vendor_name=args.vendor,
            collection_name=args.collection,
            link_discount=args.link_discount,
        )
        lines.append(("Original price", format_amount(quote["originalPrice"])))
        lines.append(("Total price", format_amount(quote["totalPrice"])))
        lines.append(("Discount amount", format_amount(quote["discountAmount"])))
    print_box(lines)


def check_cancellation(engine: OrderEngine, order_code: str) -> None:
    order = engine.get_order(order_code)
    eligible = engine.can_self_cancel(order_code)
    print_box(
        [
            ("Order", order_code),
            ("Status", order["paymentStatus"]),
            ("Self-cancel", "ALLOWED" if eligible else "NOT ALLOWED"),
            ("Cancellation ID", order["cancellationId"]),
        ]
    )


def main(args: Optional[list] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        args: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    log_level = "DEBUG" if parsed_args.verbose else "INFO"
    logger = setup_logging(level=log_level, log_file=parsed_args.log_file)

    if not parsed_args.command:
        parser.print_help()
        return 1

    engine = None
    try:
        engine = build_engine(Config(".env"))
        if parsed_args.command == "orders":
            list_orders(engine, parsed_args.source)
        elif parsed_args.command == "transition":
            run_transition(engine, parsed_args)
        elif parsed_args.command == "discount":
            show_discount(engine, parsed_args)
        elif parsed_args.command == "cancel-check":
            check_cancellation(engine, parsed_args.order_code)
    except EngineError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    except Exception as e:
        logger.error(f"Error: {e}")
        return 1
    finally:
        if engine is not None:
            engine.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
