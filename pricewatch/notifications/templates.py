"""Render de emails: funciones puras sobre el payload (texto + HTML paralelos)."""
from collections import Counter
from decimal import Decimal
from html import escape
from typing import Dict, List, Optional

from pricewatch.models.change import ChangeType
from pricewatch.models.notification import (
    DigestDeliveryPayload, DigestRecipientPayload, ImmediateDeliveryPayload,
    RenderedEmail, ReportChangeItem,
)

CHANGE_LABELS = {
    ChangeType.PRICE_INCREASE: "Price increase",
    ChangeType.PRICE_DECREASE: "Price decrease",
    ChangeType.NEW_PRODUCT: "New product",
    ChangeType.SOLD_OUT: "Sold out",
    ChangeType.BACK_IN_STOCK: "Back in stock",
}


def format_price(value: Optional[Decimal]) -> str:
    if value is None:
        return "-"
    return f"{Decimal(value):.2f} EUR"


def format_stock(value: Optional[bool]) -> str:
    if value is None:
        return "-"
    return "true" if value else "false"


def format_change_label(change_type: ChangeType) -> str:
    return CHANGE_LABELS.get(ChangeType(change_type), str(change_type))


def _has_price(item: ReportChangeItem) -> bool:
    return item.old_price is not None or item.new_price is not None


def _has_stock(item: ReportChangeItem) -> bool:
    return item.old_stock_status is not None or item.new_stock_status is not None


def render_item_text(item: ReportChangeItem) -> str:
    lines = [
        f"- {item.product.name} ({format_change_label(item.change_type)})",
        f"  {item.product.external_url}",
    ]
    if _has_price(item):
        lines.append(f"  Price: {format_price(item.old_price)} -> {format_price(item.new_price)}")
    if _has_stock(item):
        lines.append(f"  Stock: {format_stock(item.old_stock_status)} -> {format_stock(item.new_stock_status)}")
    return "\n".join(lines)


def render_item_html(item: ReportChangeItem) -> str:
    price_row = ""
    if _has_price(item):
        price_row = (
            f"<div><strong>Price:</strong> {escape(format_price(item.old_price))} -&gt; "
            f"{escape(format_price(item.new_price))}</div>"
        )
    stock_row = ""
    if _has_stock(item):
        stock_row = (
            f"<div><strong>Stock:</strong> {escape(format_stock(item.old_stock_status))} -&gt; "
            f"{escape(format_stock(item.new_stock_status))}</div>"
        )
    url = escape(item.product.external_url)
    return (
        '<li style="margin-bottom:16px;">'
        f"<div><strong>{escape(item.product.name)}</strong> - "
        f"{escape(format_change_label(item.change_type))}</div>"
        f'<div><a href="{url}">{url}</a></div>'
        f"{price_row}{stock_row}"
        "</li>"
    )


def summarize_changes(items: List[ReportChangeItem]) -> str:
    """'Price increase: 2, Sold out: 1' en orden de primera aparición."""
    counts = Counter(ChangeType(item.change_type) for item in items)
    return ", ".join(f"{format_change_label(t)}: {n}" for t, n in counts.items())


def render_immediate_email(payload: ImmediateDeliveryPayload) -> RenderedEmail:
    category_name = payload.report.category.name_et
    total = payload.report.total_changes
    summary = summarize_changes(payload.change_items)

    text_lines = [
        f"Hello {payload.user.name},",
        "",
        f"{total} changes were detected in {category_name}.",
    ]
    if summary:
        text_lines.append(f"Summary: {summary}")
    text_lines.append("")
    text_lines.extend(render_item_text(item) for item in payload.change_items)

    summary_html = f"<p>{escape(summary)}</p>" if summary else ""
    html = (
        "<html><body>"
        "<h1>Mabrik alert</h1>"
        f"<p>Hello {escape(payload.user.name)},</p>"
        f"<p><strong>{total}</strong> changes were detected in "
        f"<strong>{escape(category_name)}</strong>.</p>"
        f"{summary_html}"
        f"<ul>{''.join(render_item_html(item) for item in payload.change_items)}</ul>"
        "</body></html>"
    )

    return RenderedEmail(
        subject=f"Mabrik alert: {total} changes in {category_name}",
        text="\n".join(text_lines),
        html=html,
    )


def group_by_category(deliveries: List[DigestDeliveryPayload]) -> Dict[str, List[DigestDeliveryPayload]]:
    groups: Dict[str, List[DigestDeliveryPayload]] = {}
    for delivery in deliveries:
        groups.setdefault(delivery.report.category.name_et, []).append(delivery)
    return groups


def render_digest_email(payload: DigestRecipientPayload) -> RenderedEmail:
    groups = group_by_category(payload.deliveries)

    text_sections = []
    html_sections = []
    for category_name, deliveries in groups.items():
        lines = [category_name]
        blocks = []
        for delivery in deliveries:
            count = len(delivery.change_items)
            lines.append(f"- Report {delivery.report.id}: {count} changes")
            lines.extend(f"  {render_item_text(item)}" for item in delivery.change_items)
            blocks.append(
                '<div style="margin-bottom:24px;">'
                f"<p><strong>Report {delivery.report.id}</strong> - {count} changes</p>"
                f"<ul>{''.join(render_item_html(item) for item in delivery.change_items)}</ul>"
                "</div>"
            )
        text_sections.append("\n".join(lines))
        html_sections.append(f"<section><h2>{escape(category_name)}</h2>{''.join(blocks)}</section>")

    text = "\n".join([
        f"Hello {payload.user.name},",
        "",
        "Here is your Mabrik digest.",
        "",
        *text_sections,
    ])
    html = (
        "<html><body>"
        "<h1>Mabrik digest</h1>"
        f"<p>Hello {escape(payload.user.name)},</p>"
        "<p>Here is your Mabrik digest.</p>"
        f"{''.join(html_sections)}"
        "</body></html>"
    )

    return RenderedEmail(
        subject=(
            f"Mabrik digest: {len(payload.deliveries)} reports "
            f"across {len(groups)} categories"
        ),
        text=text,
        html=html,
    )
