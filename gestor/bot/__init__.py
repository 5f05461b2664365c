"""Chatbot do WhatsApp: máquina de estados padrão, intercept de comandos globais, motor de fluxos e menus dinâmicos."""
