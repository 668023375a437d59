import sys
from tabulate import tabulate

from pagepay.db.session import DEFAULT_DATABASE_URL
from pagepay.services.order_store import OrderStore


def show_table(title, rows, headers):
    print(f"\n🔹 {title}")
    print(tabulate(rows, headers=headers, tablefmt="grid"))


def show_orders(store: OrderStore):
    rows = [(
        o.id,
        o.out_trade_no,
        o.status.value,
        o.to_dict()["total_amount"],
        o.trade_no,
        o.created_at.isoformat(),
        o.payment_time.isoformat() if o.payment_time else None,
    ) for o in store.list_orders()]
    headers = ["Order ID", "Out Trade No", "Status", "Amount", "Trade No", "Created At", "Paid At"]
    show_table("Orders", rows, headers)


def show_events(store: OrderStore):
    rows = [(
        e["id"],
        e["order_id"],
        e["type"],
        e["payload"],
        e["ts"].isoformat() if e["ts"] else None,
    ) for e in store.events()]
    headers = ["Event ID", "Order ID", "Type", "Payload", "Timestamp"]
    show_table("Events", rows, headers)


def show_stats(store: OrderStore):
    stats = store.stats().to_dict()
    show_table("Stats", [list(stats.values())], list(stats.keys()))


if __name__ == "__main__":
    store = OrderStore(sys.argv[1] if len(sys.argv) > 1 else DEFAULT_DATABASE_URL)
    show_events(store)
    show_orders(store)
    show_stats(store)
