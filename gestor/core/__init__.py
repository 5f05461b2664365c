"""
Infraestrutura compartilhada: erros, logs, HTTP, configuração e primitivas de concorrência.
"""
