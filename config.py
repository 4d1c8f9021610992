"""Configuration loaded from environment variables"""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Replicate (upstream model gateway)
REPLICATE_API_TOKEN = os.getenv("REPLICATE_API_TOKEN")

# Clerk (identity provider, owns the credit balance)
CLERK_SECRET_KEY = os.getenv("CLERK_SECRET_KEY")
CLERK_API_URL = os.getenv("CLERK_API_URL", "https://api.clerk.com/v1")
CLERK_AUTHORIZED_PARTIES = [
    party.strip() for party in os.getenv("CLERK_AUTHORIZED_PARTIES", "").split(",") if party.strip()
]

# OpenAI (garment descriptions when the user leaves the field empty)
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")

# PayPal
PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID")
PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET")
PAYPAL_ENV = os.getenv("PAYPAL_ENV", "production")
PAYPAL_API_BASE = os.getenv("PAYPAL_API_BASE") or (
    "https://api-m.sandbox.paypal.com" if PAYPAL_ENV == "sandbox" else "https://api-m.paypal.com"
)

# Credits granted per currency unit for amount-based purchases
CREDITS_PER_USD = float(os.getenv("CREDITS_PER_USD", os.getenv("PAYPAL_CREDITS_PER_USD", "2")))

# Webhook secrets
PAYHIP_WEBHOOK_SECRET = os.getenv("PAYHIP_WEBHOOK_SECRET") or os.getenv("PAYHIP_API_KEY")
FASTSPRING_WEBHOOK_SECRET = os.getenv("FASTSPRING_WEBHOOK_SECRET")
PADDLE_WEBHOOK_SECRET_KEY = os.getenv("PADDLE_WEBHOOK_SECRET_KEY")

PORT = int(os.getenv("PORT", "8000"))
