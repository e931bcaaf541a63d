"""Stripe settlement service for pre-order payments."""
