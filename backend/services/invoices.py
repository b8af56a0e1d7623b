# services/invoices.py
# ============================================================================
# TRUCKSY PAYMENTS — INVOICE DOCUMENTS
# ============================================================================
# Invoices are rendered as standalone HTML documents (bytes), attached to the
# confirmation e-mail. Template fields are plain strings; money is already
# formatted by the time it reaches a template.
# ============================================================================

from datetime import date
from html import escape
from typing import Any, Dict, Optional

from schemas.domain import Client, FoodTruck, Order, Owner, Subscription, format_minor

SUBSCRIPTION_PLAN = "Monthly Premium"
SUBSCRIPTION_BENEFITS = [
    "Advanced dashboard analytics",
    "Priority customer support",
    "Detailed reporting features",
    "Enhanced food truck management tools",
]

_DOCUMENT = """<!DOCTYPE html>
<html><head><meta charset="utf-8"><title>{title}</title></head>
<body style="font-family:Arial,Helvetica,sans-serif;color:#111827">
<h1 style="color:#ff6b35;margin:0 0 4px 0">Trucksy</h1>
<h2 style="margin:0 0 16px 0">{title}</h2>
{body}
</body></html>
"""


def _rows(fields: Dict[str, Any]) -> str:
    return "\n".join(
        f"<tr><th align=\"left\">{escape(str(k))}</th><td>{escape(str(v))}</td></tr>"
        for k, v in fields.items()
    )


# =============================================================================
# FIELD BUILDERS
# =============================================================================

def order_invoice_fields(
    order: Order,
    truck: FoodTruck,
    client: Optional[Client],
    payment_id: str,
    issued_on: date,
    currency: str = "SAR",
) -> Dict[str, Any]:
    return {
        "orderId": order.order_id,
        "creationDate": issued_on.isoformat(),
        "orderStatus": order.status.value,
        "paymentId": payment_id,
        "clientName": (client.username if client and client.username else "Customer"),
        "customerEmail": client.email if client else None,
        "foodTruckName": truck.name,
        "orderLines": [
            {
                "itemName": line.item_name,
                "quantity": line.quantity,
                "unitPrice": format_minor(line.unit_price_minor, currency),
                "lineTotal": format_minor(line.line_total_minor, currency),
            }
            for line in order.lines
        ],
        "totalPriceFormatted": format_minor(order.total_price_minor, currency),
    }


def subscription_invoice_fields(
    owner: Owner,
    subscription: Subscription,
    fee_minor: int,
    payment_id: str,
    issued_on: date,
    currency: str = "SAR",
) -> Dict[str, Any]:
    return {
        "subscriptionId": f"SUB-{owner.owner_id}-{issued_on.year}",
        "subscriptionDate": issued_on.isoformat(),
        "paymentId": payment_id,
        "subscriptionStatus": "ACTIVE",
        "ownerName": owner.username or "Owner",
        "ownerEmail": owner.email,
        "subscriptionPlan": SUBSCRIPTION_PLAN,
        "subscriptionFee": format_minor(fee_minor, currency),
        "nextBillingDate": subscription.end_date.isoformat() if subscription.end_date else "",
        "benefits": ", ".join(SUBSCRIPTION_BENEFITS),
    }


# =============================================================================
# RENDERERS
# =============================================================================

def render_order_invoice(fields: Dict[str, Any]) -> bytes:
    header = {
        "Invoice for order": f"#{fields['orderId']}",
        "Date": fields["creationDate"],
        "Status": fields["orderStatus"],
        "Payment": fields["paymentId"],
        "Customer": fields["clientName"],
        "Food truck": fields.get("foodTruckName", ""),
    }
    lines = "\n".join(
        "<tr><td>{}</td><td align=\"right\">{}</td><td align=\"right\">{}</td><td align=\"right\">{}</td></tr>".format(
            escape(str(line["itemName"])),
            line["quantity"],
            escape(line["unitPrice"]),
            escape(line["lineTotal"]),
        )
        for line in fields["orderLines"]
    )
    body = (
        f"<table>{_rows(header)}</table>\n"
        "<table style=\"margin-top:16px;border-collapse:collapse\" cellpadding=\"4\">\n"
        "<tr><th align=\"left\">Item</th><th>Qty</th><th>Unit price</th><th>Line total</th></tr>\n"
        f"{lines}\n"
        f"<tr><th align=\"left\" colspan=\"3\">Total</th><th align=\"right\">{escape(fields['totalPriceFormatted'])}</th></tr>\n"
        "</table>"
    )
    return _DOCUMENT.format(title=f"Invoice #{fields['orderId']}", body=body).encode("utf-8")


def render_subscription_invoice(fields: Dict[str, Any]) -> bytes:
    shown = {
        "Subscription": fields["subscriptionId"],
        "Date": fields["subscriptionDate"],
        "Payment": fields["paymentId"],
        "Status": fields["subscriptionStatus"],
        "Owner": fields["ownerName"],
        "Plan": fields["subscriptionPlan"],
        "Fee": fields["subscriptionFee"],
        "Next billing date": fields["nextBillingDate"],
        "Benefits": fields["benefits"],
    }
    body = f"<table>{_rows(shown)}</table>"
    return _DOCUMENT.format(title="Subscription Invoice", body=body).encode("utf-8")


# =============================================================================
# E-MAIL BODIES
# =============================================================================

def order_email_html(order: Order, gateway_message: Optional[str], currency: str = "SAR") -> str:
    return (
        '<div style="font-family:Arial,Helvetica,sans-serif">'
        '<h2 style="margin:0 0 8px 0;color:#ff6b35">Thanks for your order!</h2>'
        f"<p>Your Trucksy order <b>#{order.order_id}</b> has been paid successfully.</p>"
        f"<p>Order status: <b>{escape(gateway_message or order.status.value)}</b></p>"
        f"<p>Total amount: <b>{format_minor(order.total_price_minor, currency)}</b></p>"
        "<p>Your invoice is attached.</p>"
        '<p style="color:#6b7280;font-size:12px">'
        "If you didn't authorize this payment, please contact support immediately.</p>"
        "</div>"
    )


def subscription_email_html(fields: Dict[str, Any]) -> str:
    benefits = "".join(f"<li>{escape(b)}</li>" for b in SUBSCRIPTION_BENEFITS)
    return (
        '<div style="font-family:Arial,Helvetica,sans-serif">'
        '<h2 style="margin:0 0 8px 0;color:#ff6b35">Welcome to Trucksy Premium!</h2>'
        "<p>Your subscription payment has been processed successfully.</p>"
        f"<p>Subscription ID: <b>{escape(fields['subscriptionId'])}</b></p>"
        f"<p>Amount paid: <b>{escape(fields['subscriptionFee'])}</b></p>"
        f"<p>Next billing date: <b>{escape(fields['nextBillingDate'])}</b></p>"
        "<p>Your subscription invoice is attached.</p>"
        f'<h3 style="color:#ff6b35">Premium Benefits:</h3><ul>{benefits}</ul>'
        '<p style="color:#6b7280;font-size:12px">'
        "If you didn't authorize this payment, please contact support immediately.</p>"
        "</div>"
    )
