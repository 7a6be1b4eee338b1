"""
Order Service — クエリ (Read 側)

台帳から取り出した注文の一覧に対する集計・ページングを行う。
"""

import math

from .aggregate import Order, OrderStatus


def paginate(orders: list[Order], page: int, limit: int) -> dict:
    start = (page - 1) * limit
    end = page * limit
    return {
        "orders": orders[start:end],
        "pagination": {
            "current_page": page,
            "total_pages": math.ceil(len(orders) / limit),
            "total_orders": len(orders),
            "has_next_page": end < len(orders),
            "has_prev_page": page > 1,
        },
    }


def order_stats(orders: list[Order], user_id: str | None = None) -> dict:
    """ステータス別件数と、確定済み注文の売上合計・平均。"""
    if user_id is not None:
        orders = [order for order in orders if order.user_id == user_id]

    confirmed = [order for order in orders if order.status == OrderStatus.CONFIRMED]
    total_revenue = round(sum(order.total_amount for order in confirmed), 2)
    return {
        "total_orders": len(orders),
        "orders_by_status": {
            status.value: sum(1 for order in orders if order.status == status)
            for status in OrderStatus
        },
        "total_revenue": total_revenue,
        "average_order_value": round(total_revenue / len(confirmed), 2) if confirmed else 0.0,
    }
