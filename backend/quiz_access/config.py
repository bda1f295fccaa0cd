"""
Quiz Access Configuration and Constants

Credit costs, AI thresholds and error messages are defined here.
All credit values are in quiz credits.
"""

# ==================== QUIZ CREDIT COSTS ====================
# Credit hours of a quiz -> credits charged per attempt.
# Fixed lookup, not a formula (note the jump at 1 hour).
CREDIT_HOURS_TO_QUIZ_CREDITS = {
    1: 125,
    2: 200,
    3: 300,
}

# Anything outside the table (0, negatives, 4+, fractional hours)
DEFAULT_QUIZ_CREDITS = 300

# ==================== AI ACCESS ====================
AI_ACCESS = {
    "free_access_min_count": 2,   # free path needs at least 2 units left
    "credit_threshold": 3000,     # balance required before a credit-funded AI call
    "credit_cost": 550,           # flat debit per AI call
}

# ==================== QUIZ ACCESS ====================
QUIZ_ACCESS = {
    "free_access_min_count": 1,
    "moderation_bypass_threshold": 5,  # moderated questions in the quiz
}

# ==================== PURCHASES ====================
# Credit-type payments grant amount * CREDITS_PER_CURRENCY_UNIT
CREDITS_PER_CURRENCY_UNIT = 100
CREDIT_PAYMENT_TYPES = {"quiz", "default", "credits"}

# ==================== RECONCILIATION ====================
RECONCILE_MAX_ATTEMPTS = 2

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "USER_NOT_FOUND": "User not found.",
    "QUIZ_NOT_FOUND": "Quiz not found.",
    "PAYMENT_NOT_FOUND": "Payment not found.",
    "FORBIDDEN": "Your account is not allowed to access this resource.",
    "SUBSCRIPTION_REQUIRED": "An active subscription is required.",
    "INSUFFICIENT_CREDITS": "Not enough quiz credits. Please purchase more.",
    "ACCESS_DENIED": "Access requires a subscription or quiz credits.",
    "INVALID_ACCESS_TYPE": "Your account has an unsupported access type.",
    "RECONCILIATION_FAILED": "Could not refresh your packages. Please try again.",
    "ACCESS_VALIDATION_FAILED": "Could not validate access. Please try again.",
    "SETTLEMENT_FAILED": "Could not settle payment.",
}
