"""Integração com o gateway Evolution (WhatsApp)."""
