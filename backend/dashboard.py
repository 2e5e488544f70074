from collections import Counter
from datetime import date, timedelta
from typing import Dict, List, Optional

from . import store as resources
from .models import DashboardMetrics, Delivery, DistributionBucket, Driver, Order, Vehicle

# Flat per-unit price; products carry no price the dashboard trusts
PRICE_PER_UNIT = 50

MONTH_NAMES = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
               "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

DELIVERY_STATUS_BUCKETS = [
    ("Completed", "completed", "#48BB78"),
    ("In Progress", "in-progress", "#4299E1"),
    ("Pending", "pending", "#F6AD55"),
    ("Failed", "failed", "#F56565"),
]


def orders_over_time(orders: List[Order], today: date, days: int = 7) -> List[Dict]:
    """Orders per delivery date for the last `days` days, oldest first."""
    per_day = Counter(o.delivery_date for o in orders)
    window = [(today - timedelta(days=days - 1 - i)).isoformat() for i in range(days)]
    return [{"date": d, "count": per_day.get(d, 0), "status": "all"} for d in window]


def monthly_revenue(orders: List[Order], today: date, months: int = 6) -> List[Dict]:
    """Completed-order revenue per delivery month for the last `months` months."""
    buckets = []
    for back in range(months - 1, -1, -1):
        year, month = today.year, today.month - back
        while month < 1:
            month += 12
            year -= 1
        key = f"{year}-{month:02d}"
        done = [o for o in orders if o.status == "completed" and o.delivery_date[:7] == key]
        buckets.append({
            "month": MONTH_NAMES[month - 1],
            "revenue": sum(o.quantity * PRICE_PER_UNIT for o in done),
            "orders": len(done),
        })
    return buckets


def calculate_metrics(orders: List[Order], deliveries: List[Delivery], vehicles: List[Vehicle],
                      drivers: List[Driver], today: Optional[date] = None) -> DashboardMetrics:
    today = today or date.today()

    order_status = Counter(o.status for o in orders)
    delivery_status = Counter(d.status for d in deliveries)
    completed = [o for o in orders if o.status == "completed"]

    # a vehicle is busy while any order on it is not completed
    busy = {o.vehicle_id for o in orders if o.vehicle_id and o.status != "completed"}

    vehicle_types = Counter(v.type for v in vehicles)

    return DashboardMetrics(
        total_vehicles=len(vehicles),
        active_vehicles=sum(1 for v in vehicles if v.id in busy),
        total_drivers=len(drivers),
        active_drivers=sum(1 for d in drivers if d.status == "active"),
        total_orders=len(orders),
        completed_orders=order_status["completed"],
        pending_orders=order_status["pending"],
        in_transit_orders=order_status["in-transit"],
        total_deliveries=len(deliveries),
        completed_deliveries=delivery_status["completed"],
        pending_deliveries=delivery_status["pending"],
        in_progress_deliveries=delivery_status["in-progress"],
        failed_deliveries=delivery_status["failed"],
        total_revenue=sum(o.quantity * PRICE_PER_UNIT for o in completed),
        total_products_delivered=sum(o.quantity for o in completed),
        orders_over_time=orders_over_time(orders, today),
        delivery_status_distribution=[
            DistributionBucket(name=name, value=delivery_status[status], color=color)
            for name, status, color in DELIVERY_STATUS_BUCKETS
            if delivery_status[status] > 0
        ],
        vehicle_type_distribution=[
            DistributionBucket(name=name, value=count) for name, count in vehicle_types.items()
        ],
        monthly_revenue=monthly_revenue(orders, today),
    )


def load_metrics(store, today: Optional[date] = None) -> DashboardMetrics:
    return calculate_metrics(
        orders=[Order(**o) for o in store.list(resources.ORDERS)],
        deliveries=[Delivery(**d) for d in store.list(resources.DELIVERIES)],
        vehicles=[Vehicle(**v) for v in store.list(resources.VEHICLES)],
        drivers=[Driver(**d) for d in store.list(resources.DRIVERS)],
        today=today,
    )
