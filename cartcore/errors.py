"""
Common Message Constants

Centralized user-facing messages for cart domain signals, so the engine and
the notifications collaborator never duplicate literal strings.
"""

# Caller errors
ERROR_EMPTY_ID = "Product id is empty"
ERROR_INVALID_QUANTITY = "Quantity must be a positive integer"

# Stock signals
ERROR_PRODUCT_OUT_OF_STOCK = "Product is out of stock."
ERROR_ONLY_X_LEFT = "Only {stock} left in stock."
ERROR_INSUFFICIENT_STOCK_ADD = "Not enough stock. Available: {max}."
ERROR_INSUFFICIENT_STOCK_CHANGE = "Not enough stock. Available: {stock}."
ERROR_LIMIT_REACHED = "You have reached the maximum quantity for this product"
ERROR_NO_STOCK = "Out of stock"

# Success messages
MESSAGE_ADDED_TO_CART = 'Product "{title}" x{qty} added to cart.'

# Favorites
ERROR_FAVORITES_LIMIT = "Favorites limit reached ({max})."
