"""
Máquina de estados padrão do chatbot.

Cada estado tem uma mensagem e, ou opções (palavras-chave -> próximo
estado), ou a coleta de um valor livre. Os textos podem ser substituídos
por implantação via `BotConfig.state_messages`.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

START = "START"
ENCERRADO = "ENCERRADO"
AGUARDANDO_HUMANO = "AGUARDANDO_HUMANO"

INVALID_OPTION_PREFIX = "❌ Opção inválida. Por favor, escolha uma das opções disponíveis.\n\n"


@dataclass(frozen=True)
class StateOption:
    inputs: Tuple[str, ...]
    next_state: str
    label: Optional[str] = None


@dataclass(frozen=True)
class CollectInput:
    variable_name: str
    next_state: str
    prompt: Optional[str] = None


@dataclass(frozen=True)
class StateConfig:
    message: str
    options: Tuple[StateOption, ...] = ()
    collect_input: Optional[CollectInput] = None
    action: Optional[str] = None


@dataclass
class StateTransitionResult:
    new_state: str
    response: str
    awaiting_input: bool = False
    input_variable_name: Optional[str] = None
    should_generate_test: bool = False
    test_type: Optional[str] = None
    device_info: Optional[str] = None
    transfer_to_human: bool = False


def _opt(inputs: List[str], next_state: str, label: str) -> StateOption:
    return StateOption(tuple(inputs), next_state, label)


STATE_MESSAGES: Dict[str, StateConfig] = {
    "START": StateConfig(
        message=(
            "👋 Olá! Seja bem-vindo(a)! 🎬📺\n\n"
            "Qualidade, estabilidade e o melhor do entretenimento para você!\n\n"
            "Escolha uma opção abaixo 👇\n\n"
            "1️⃣ Conhecer os Planos\n"
            "2️⃣ Teste Grátis 🎁\n"
            "3️⃣ Renovar Assinatura 🫰\n"
            "4️⃣ Suporte Técnico 🛠️\n"
            "5️⃣ Falar com Atendente 👨‍💻\n"
            "6️⃣ Revenda ⭐"
        ),
        options=(
            _opt(["1", "planos", "plano", "preços", "precos", "valores", "conhecer"], "PLANOS", "Conhecer os Planos"),
            _opt(["2", "teste", "testar", "gratis", "grátis", "free"], "TESTE", "Teste Grátis"),
            _opt(["3", "renovar", "renovação", "renovacao", "assinatura", "pagar"], "RENOVAR", "Renovar Assinatura"),
            _opt(["4", "suporte", "tecnico", "técnico", "problema", "ajuda"], "SUPORTE", "Suporte Técnico"),
            _opt(["5", "atendente", "humano", "falar", "pessoa"], "ATENDENTE", "Falar com Atendente"),
            _opt(["6", "revenda", "revendedor", "parceiro", "ps control"], "REVENDA", "Revenda"),
        ),
    ),
    "PLANOS": StateConfig(
        message="📋 *Nossos Planos*\n\n{plans_list}\n\nPara contratar, entre em contato pelo suporte!\n\n0️⃣ Voltar ao menu",
        options=(_opt(["0", "voltar", "menu", "inicio"], "START", "Voltar"),),
    ),
    "TESTE": StateConfig(
        message="📺 *Escolha onde deseja testar:*\n\n1️⃣ TV (Smart TV, TV Box)\n2️⃣ Celular (Android/iPhone)\n\n0️⃣ Voltar",
        options=(
            _opt(["1", "tv", "smart", "box", "tvbox", "smart tv"], "TESTE_TV", "TV"),
            _opt(["2", "celular", "cel", "android", "iphone", "ios", "smartphone"], "TESTE_CELULAR", "Celular"),
            _opt(["0", "voltar"], "START", "Voltar"),
        ),
    ),
    "TESTE_TV": StateConfig(
        message='📺 *Teste para TV*\n\nPor favor, informe o modelo da sua TV:\n(Ex: Samsung 55", LG Smart, TV Box MXQ, etc.)',
        collect_input=CollectInput("tv_model", "TESTE_GERANDO", "Digite o modelo da sua TV:"),
    ),
    "TESTE_CELULAR": StateConfig(
        message="📱 *Teste para Celular*\n\nQual é o sistema do seu celular?\n1️⃣ Android\n2️⃣ iPhone (iOS)\n\n0️⃣ Voltar",
        options=(
            _opt(["1", "android"], "TESTE_GERANDO_ANDROID", "Android"),
            _opt(["2", "iphone", "ios", "apple"], "TESTE_GERANDO_IPHONE", "iPhone"),
            _opt(["0", "voltar"], "TESTE", "Voltar"),
        ),
    ),
    "TESTE_GERANDO": StateConfig(
        message="⏳ *Gerando seu teste...*\n\nAguarde um momento enquanto criamos seu acesso de teste.",
        action="generate_test",
    ),
    "TESTE_GERANDO_ANDROID": StateConfig(
        message="⏳ *Gerando teste para Android...*\n\nAguarde um momento.",
        action="generate_test_android",
    ),
    "TESTE_GERANDO_IPHONE": StateConfig(
        message="⏳ *Gerando teste para iPhone...*\n\nAguarde um momento.",
        action="generate_test_iphone",
    ),
    "TESTE_SUCESSO": StateConfig(
        message=(
            "✅ *Teste gerado com sucesso!*\n\n"
            "Seus dados de acesso foram enviados.\n"
            "O teste expira em {expiration}.\n\n"
            "Precisa de algo mais?\n"
            "1️⃣ Voltar ao menu\n"
            "0️⃣ Encerrar"
        ),
        options=(
            _opt(["1", "menu", "voltar", "inicio"], "START", "Menu"),
            _opt(["0", "encerrar", "sair", "tchau"], "ENCERRADO", "Encerrar"),
        ),
    ),
    "TESTE_ERRO": StateConfig(
        message=(
            "❌ *Não foi possível gerar o teste*\n\n"
            "Ocorreu um erro ao gerar seu teste.\n"
            "Por favor, tente novamente ou entre em contato com o suporte.\n\n"
            "1️⃣ Tentar novamente\n"
            "2️⃣ Falar com suporte\n"
            "0️⃣ Voltar ao menu"
        ),
        options=(
            _opt(["1", "tentar", "novamente"], "TESTE", "Tentar novamente"),
            _opt(["2", "suporte", "ajuda"], "SUPORTE", "Suporte"),
            _opt(["0", "voltar", "menu"], "START", "Menu"),
        ),
    ),
    "RENOVAR": StateConfig(
        message="🫰 *Renovar Assinatura*\n\nPara renovar sua assinatura, informe seu login ou telefone cadastrado:",
        collect_input=CollectInput("client_identifier", "RENOVAR_PIX", "Digite seu login ou telefone:"),
    ),
    "RENOVAR_PIX": StateConfig(
        message="💰 *Pagamento via PIX*\n\nValor: R$ {valor}\nChave PIX: {pix_key}\n\nApós o pagamento, envie o comprovante aqui!\n\n0️⃣ Voltar ao menu",
        options=(_opt(["0", "voltar", "menu"], "START", "Voltar"),),
    ),
    "ATENDENTE": StateConfig(
        message="👨‍💻 *Falar com Atendente*\n\nVocê será transferido para um atendente humano.\nPor favor, aguarde...",
        action="transfer_to_human",
    ),
    "REVENDA": StateConfig(
        message=(
            "⭐ *Programa de Revenda*\n\n"
            "Quer se tornar um revendedor e ter seu próprio negócio?\n\n"
            "📌 Benefícios:\n"
            "• Painel de controle exclusivo\n"
            "• Suporte técnico prioritário\n"
            "• Materiais de divulgação\n"
            "• Preços especiais\n\n"
            "Para mais informações, fale com nosso suporte!\n\n"
            "0️⃣ Voltar ao menu"
        ),
        options=(_opt(["0", "voltar", "menu"], "START", "Voltar"),),
    ),
    "SUPORTE": StateConfig(
        message="🛠️ *Suporte Técnico*\n\nPor favor, descreva brevemente seu problema ou dúvida:",
        collect_input=CollectInput("support_message", "SUPORTE_ENCAMINHADO", "Descreva seu problema:"),
    ),
    "SUPORTE_ENCAMINHADO": StateConfig(
        message=(
            "✅ *Mensagem recebida!*\n\n"
            "Sua solicitação foi encaminhada para nossa equipe.\n"
            "Um atendente entrará em contato em breve.\n\n"
            "Número do protocolo: #{ticket_id}\n\n"
            "0️⃣ Voltar ao menu"
        ),
        options=(_opt(["0", "voltar", "menu"], "START", "Voltar"),),
        action="transfer_to_human",
    ),
    "AGUARDANDO_HUMANO": StateConfig(
        message=(
            "👤 *Aguardando atendente*\n\n"
            "Você está na fila de atendimento.\n"
            "Um atendente irá responder em breve.\n\n"
            "Digite *menu* para voltar ao início."
        ),
        options=(_opt(["menu", "voltar", "inicio", "#"], "START", "Menu"),),
    ),
    "ENCERRADO": StateConfig(
        message="👋 *Atendimento encerrado*\n\nObrigado pelo contato!\nPara iniciar uma nova conversa, envie qualquer mensagem.",
    ),
}

_TEST_TYPES = {
    "generate_test": "tv",
    "generate_test_android": "celular",
    "generate_test_iphone": "celular",
}


def match_option(user_input: str, option: StateOption) -> bool:
    normalized = user_input.lower().strip()
    for opt in option.inputs:
        candidate = opt.lower().strip()
        if normalized == candidate or candidate in normalized:
            return True
    return False


_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


def render_message(template: str, variables: Mapping[str, Any]) -> str:
    """Preenche `{nome}`; placeholders sem valor ficam como estão."""

    def _sub(m: "re.Match[str]") -> str:
        value = variables.get(m.group(1))
        return m.group(0) if value is None else str(value)

    return _PLACEHOLDER_RE.sub(_sub, template)


class BotStateMachine:
    def __init__(self, overrides: Optional[Mapping[str, str]] = None):
        states = dict(STATE_MESSAGES)
        for name, text in (overrides or {}).items():
            key = str(name).upper()
            if key in states and text:
                states[key] = replace(states[key], message=str(text))
        self.states: Dict[str, StateConfig] = states

    def get_state_message(self, state: str) -> str:
        config = self.states.get(state) or self.states[START]
        return config.message

    def state_requires_input(self, state: str) -> bool:
        config = self.states.get(state)
        return bool(config and config.collect_input)

    def get_input_variable_name(self, state: str) -> Optional[str]:
        config = self.states.get(state)
        return config.collect_input.variable_name if config and config.collect_input else None

    def process_state_transition(
        self,
        current_state: str,
        user_input: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> StateTransitionResult:
        config = self.states.get(current_state)
        if config is None or current_state == ENCERRADO:
            # atendimento encerrado: qualquer mensagem abre nova conversa
            return StateTransitionResult(new_state=START, response=self.states[START].message)

        if config.collect_input:
            next_state = config.collect_input.next_state
            next_config = self.states.get(next_state)
            if next_state == "TESTE_GERANDO":
                test_type: Optional[str] = "tv"
            elif next_state in ("TESTE_GERANDO_ANDROID", "TESTE_GERANDO_IPHONE"):
                test_type = "celular"
            else:
                test_type = None
            return StateTransitionResult(
                new_state=next_state,
                response=next_config.message if next_config else "Processando...",
                should_generate_test=next_state.startswith("TESTE_GERANDO"),
                test_type=test_type,
                device_info=user_input,
                transfer_to_human=bool(next_config and next_config.action == "transfer_to_human"),
            )

        for option in config.options:
            if not match_option(user_input, option):
                continue
            next_config = self.states.get(option.next_state)
            if next_config is None:
                return StateTransitionResult(new_state=START, response=self.states[START].message)
            action = next_config.action or ""
            return StateTransitionResult(
                new_state=option.next_state,
                response=next_config.message,
                awaiting_input=next_config.collect_input is not None,
                input_variable_name=next_config.collect_input.variable_name if next_config.collect_input else None,
                should_generate_test=action.startswith("generate_test"),
                test_type=_TEST_TYPES.get(action),
                transfer_to_human=action == "transfer_to_human",
            )

        return StateTransitionResult(
            new_state=current_state,
            response=INVALID_OPTION_PREFIX + config.message,
            awaiting_input=config.collect_input is not None,
            input_variable_name=None,
        )


_default = BotStateMachine()


def process_state_transition(current_state: str, user_input: str, context: Optional[Mapping[str, Any]] = None) -> StateTransitionResult:
    return _default.process_state_transition(current_state, user_input, context)


def get_state_message(state: str) -> str:
    return _default.get_state_message(state)


def state_requires_input(state: str) -> bool:
    return _default.state_requires_input(state)


def get_input_variable_name(state: str) -> Optional[str]:
    return _default.get_input_variable_name(state)
