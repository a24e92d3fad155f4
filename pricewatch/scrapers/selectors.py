"""Selectores CSS del listado de productos (tema WooCommerce)."""

PRODUCT_SELECTORS = {
    "product_card": "li.product, li.product-col.product",
    "title": "h2.woocommerce-loop-product__title, .woocommerce-loop-product__title",
    "product_link": "a.woocommerce-LoopProduct-link, a.woocommerce-loop-product__link, a",
    "image": "img",
    "current_price": ".price .amount, .price ins .amount, .price bdi",
    "sale_price": ".price ins .amount, .price ins bdi",
    "original_price": ".price del .amount, .price del bdi",
    "out_of_stock": ".outofstock, .stock.out-of-stock, .ast-shop-product-out-of-stock",
    "in_stock": ".stock.in-stock",
    "product_template_script": "ul.products script[type='text/template']",
    "next_page": "a.next, .next.page-numbers",
}

# Atributos de imagen en orden de prioridad (lazy loading primero)
IMAGE_ATTRIBUTES = ("data-lazy-src", "data-src", "src")

OUT_OF_STOCK_CLASSES = ("outofstock", "out-of-stock")
IN_STOCK_CLASSES = ("instock", "in-stock")
OUT_OF_STOCK_TEXT = ("out of stock", "laost otsas")
IN_STOCK_TEXT = ("in stock", "laos")
