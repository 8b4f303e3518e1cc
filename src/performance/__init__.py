"""
Contract Performance Module
===========================

Bounded Context for supplier contract adherence and SLA performance.

Responsibilities:
- Resolve effective SLA targets per contract, product and date
- Compute delivery, quality, quantity and fulfillment metrics per period
- Classify metrics into status tiers and price penalties and bonuses
- Track trends and escalate breaches, notifying via Slack
- Serve contract reports and a portfolio dashboard over HTTP
"""

__version__ = "1.0.0"
