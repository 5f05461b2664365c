"""
Clientes: criptografia de credenciais, validação, upsert atômico e backup/restauração.
"""
