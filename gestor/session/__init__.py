"""Sessão de autenticação: cache local, papéis e máquina de estados."""
