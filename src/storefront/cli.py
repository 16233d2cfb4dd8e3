"""Command-line interface for storefront."""

import argparse
import json
import sys
from decimal import Decimal, InvalidOperation

from . import __version__
from .catalog import CatalogStore
from .config import Settings, configure_logging, load_settings
from .dashboard import DashboardService
from .database import Database
from .errors import StorefrontError


def get_settings(args: argparse.Namespace) -> Settings:
    """Environment settings, with --database-url taking precedence."""
    settings = load_settings()
    if getattr(args, "database_url", None):
        settings.database_url = args.database_url
    return settings


def get_database(args: argparse.Namespace) -> Database:
    db = Database(get_settings(args).database_url)
    db.create_schema()
    return db


def _json_default(value):
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create the database schema."""
    try:
        db = get_database(args)
        print(f"Initialized database: {db.url}")
        db.dispose()
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_add_product(args: argparse.Namespace) -> int:
    """Add a product to the catalog."""
    try:
        try:
            price = Decimal(args.price)
        except InvalidOperation:
            print(f"Error: Invalid price: {args.price}", file=sys.stderr)
            return 1

        db = get_database(args)
        with db.unit_of_work() as uow:
            product = CatalogStore().create_product(
                uow.session,
                name=args.name,
                price=price,
                stock_quantity=args.stock,
                sku=args.sku,
                slug=args.slug,
            )
            product_id, slug = product.id, product.slug
        db.dispose()

        print(f"Added product {product_id}")
        print(f"  Name: {args.name}")
        print(f"  Slug: {slug}")
        print(f"  Price: {price}")
        print(f"  Stock: {args.stock}")
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_stats(args: argparse.Namespace) -> int:
    """Print dashboard overview statistics."""
    try:
        settings = get_settings(args)
        db = get_database(args)
        dashboard = DashboardService(db, low_stock_threshold=settings.low_stock_threshold)
        stats = dashboard.overview_stats()
        orders = dashboard.order_stats()
        db.dispose()

        if args.json:
            print(
                json.dumps(
                    {"overview": stats, "orders": orders}, indent=2, default=_json_default
                )
            )
            return 0

        print(f"Revenue:             {stats['total_revenue']}")
        print(f"Orders:              {stats['total_orders']}")
        print(f"Customers:           {stats['total_customers']}")
        print(f"Average order value: {stats['average_order_value']}")
        print(f"Pending orders:      {stats['pending_orders']}")
        print(f"Low-stock products:  {stats['low_stock_products']}")
        print()
        print("Orders by status:")
        for status in ("pending", "processing", "shipped", "delivered", "cancelled"):
            print(f"  {status:<11} {orders[status]}")
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server."""
    try:
        import uvicorn

        settings = get_settings(args)
        configure_logging(settings.log_level)
        settings.warn_missing_credentials()

        print("Starting storefront API server...")
        print(f"Database: {settings.database_url}")
        print(f"API docs: http://{args.host}:{args.port}/docs")
        print()

        # When reload is enabled, uvicorn requires the app as an import string
        app_target = "storefront.api:app" if args.reload else None
        if app_target is None:
            from .api import app
            app_target = app

        uvicorn.run(
            app_target,
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level=settings.log_level.lower(),
        )
        return 0

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="storefront",
        description="Ecommerce backend: cart, checkout, payments and order management",
    )
    parser.add_argument(
        "--version", "-V", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--database-url",
        help="SQLAlchemy database URL (default: STOREFRONT_DATABASE_URL or local SQLite)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init-db
    subparsers.add_parser("init-db", help="Create the database schema")

    # add-product
    product_parser = subparsers.add_parser("add-product", help="Add a catalog product")
    product_parser.add_argument("name", help="Product name")
    product_parser.add_argument("price", help="Unit price, e.g. 19.99")
    product_parser.add_argument("--stock", type=int, default=0, help="Initial stock (default: 0)")
    product_parser.add_argument("--sku", help="Stock keeping unit")
    product_parser.add_argument("--slug", help="URL slug (default: derived from name)")

    # stats
    stats_parser = subparsers.add_parser("stats", help="Show dashboard statistics")
    stats_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument(
        "--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", type=int, default=8000, help="Port to bind to (default: 8000)"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload for development"
    )

    return parser


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    commands = {
        "init-db": cmd_init_db,
        "add-product": cmd_add_product,
        "stats": cmd_stats,
        "serve": cmd_serve,
    }

    cmd_func = commands.get(args.command)
    if cmd_func:
        return cmd_func(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
