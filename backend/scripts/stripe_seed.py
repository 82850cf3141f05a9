#!/usr/bin/env python3
"""
Stripe seed script.

Creates the Plus and Pro products with monthly and yearly prices in a Stripe
TEST account, then writes the new price ids into the .env file.

Usage:
    python backend/scripts/stripe_seed.py --env-file backend/.env

Prerequisites:
    - STRIPE_SECRET_KEY set to a test key (sk_test_...)
"""
import argparse
import os
import re
import sys
from typing import Dict, List, Optional

import stripe
from dotenv import load_dotenv

from backend.features.plans.registry import DEFAULT_PLANS
from backend.models.plan import PlanId


# (plan, interval) -> env var receiving the created price id
ENV_KEYS = {
    (PlanId.PLUS, "monthly"): "STRIPE_PLUS_MONTHLY_PRICE_ID",
    (PlanId.PLUS, "yearly"): "STRIPE_PLUS_YEARLY_PRICE_ID",
    (PlanId.PRO, "monthly"): "STRIPE_PRO_MONTHLY_PRICE_ID",
    (PlanId.PRO, "yearly"): "STRIPE_PRO_YEARLY_PRICE_ID",
}

STRIPE_INTERVALS = {"monthly": "month", "yearly": "year"}


def check_secret_key(secret_key: Optional[str]) -> str:
    """Refuse to run without a test-mode key."""
    if not secret_key:
        raise SystemExit("STRIPE_SECRET_KEY not found in environment")
    if not secret_key.startswith("sk_test_"):
        raise SystemExit('This script only runs with TEST keys (STRIPE_SECRET_KEY must start with "sk_test_")')
    return secret_key


def create_products(currency: str = "usd") -> Dict[str, str]:
    """
    Create one product per paid plan and a recurring price per interval.

    Returns:
        Mapping of env var name to created price id
    """
    price_ids: Dict[str, str] = {}
    for plan_id in (PlanId.PLUS, PlanId.PRO):
        config = DEFAULT_PLANS[plan_id]
        print(f"Creating {config['name']} plan...")

        product = stripe.Product.create(
            name=config["name"],
            description=config["description"],
            metadata={"planId": plan_id.value},
        )
        print(f"  ✓ Product created: {product.id}")

        amounts = {"monthly": config["monthly_price"], "yearly": config["yearly_price"]}
        for interval, amount in amounts.items():
            price = stripe.Price.create(
                product=product.id,
                unit_amount=amount * 100,
                currency=currency,
                recurring={"interval": STRIPE_INTERVALS[interval]},
                metadata={
                    "planId": plan_id.value,
                    "interval": interval,
                    "trialDays": str(config.get("trial_days") or 0),
                },
            )
            price_ids[ENV_KEYS[(plan_id, interval)]] = price.id
            print(f"  ✓ {interval.capitalize()} price: {price.id} ({amount} {currency.upper()})")

    return price_ids


def update_env_file(env_path: str, price_ids: Dict[str, str]) -> List[str]:
    """
    Rewrite ``KEY=value`` lines for each price id, appending keys that are missing.

    Returns:
        Keys that were written
    """
    content = ""
    if os.path.exists(env_path):
        with open(env_path, "r", encoding="utf-8") as f:
            content = f.read()

    written = []
    for key, value in price_ids.items():
        pattern = re.compile(rf"^{re.escape(key)}=.*$", re.MULTILINE)
        line = f"{key}={value}"
        if pattern.search(content):
            content = pattern.sub(line, content)
        else:
            if content and not content.endswith("\n"):
                content += "\n"
            content += line + "\n"
        written.append(key)

    with open(env_path, "w", encoding="utf-8") as f:
        f.write(content)
    return written


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Seed Stripe test products and prices")
    parser.add_argument("--env-file", default=".env", help="Path of the .env file to update")
    parser.add_argument("--currency", default="usd")
    args = parser.parse_args(argv)

    load_dotenv(dotenv_path=args.env_file)
    stripe.api_key = check_secret_key(os.getenv("STRIPE_SECRET_KEY"))

    print("\n========================================")
    print("       STRIPE SEED SCRIPT")
    print("========================================\n")

    try:
        price_ids = create_products(args.currency)
    except stripe.StripeError as e:
        print(f"❌ Seed process failed: {e}")
        return 1

    for key in update_env_file(args.env_file, price_ids):
        print(f"  ✓ {key} updated")

    print("\n✅ Stripe seed completed successfully!")
    for key, value in price_ids.items():
        print(f"  {key}: {value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
