"""Gestor IPTV backend: clientes, chatbot WhatsApp e backup sobre Supabase."""

__version__ = "1.0.0"
