"""
Reply texts for the conversational channel (pt-BR).
"""

MAIN_MENU = (
    "Bem-vindo ao Token Comunitário!\n"
    "1. Ver saldo\n"
    "2. Enviar dinheiro\n"
    "3. Ver últimas transações\n"
    "4. Cadastrar\n"
    "Digite o número da opção desejada"
)

BACK_TO_MENU = "Digite *123# para voltar ao menu."

INVALID_OPTION = "Opção inválida. Digite 1, 2, 3 ou 4."
INVALID_STATE = "Erro: Estado inválido. " + BACK_TO_MENU
INVALID_AMOUNT = "Valor inválido. Digite um valor válido (ex: 10.50)"

ASK_RECIPIENT = "Digite o número de telefone do destinatário (ex: +5511987654321)"
ASK_AMOUNT = "Digite o valor a enviar (ex: 10.50 para R$10,50)"

NOT_REGISTERED = "Você não está cadastrado. Digite 4 para cadastrar."
NOT_REGISTERED_SHORT = "Você não está cadastrado."
NO_RECENT_TRANSACTIONS = "Sem transações recentes"
BALANCE_UNAVAILABLE = "Saldo indisponível no momento. Tente novamente mais tarde."

AUTH_SENT = "Por favor, verifique seu WhatsApp para confirmar o login."
AUTH_FAILED = "Não foi possível enviar a verificação. Tente novamente mais tarde."
AUTH_PENDING = "Ainda aguardando a confirmação do seu cadastro."
AUTH_CONFIRMED = "Cadastro confirmado!"

BUSY = "Sua mensagem anterior ainda está sendo processada. Tente novamente."
SYSTEM_ERROR = "Erro no sistema. Tente novamente mais tarde."


def balance(amount: str, masked_address: str) -> str:
    return f"Saldo: {amount}\nCarteira: {masked_address}"


def transfer_sent(reference: str) -> str:
    return f"Transferência enviada! Hash: {reference}\n{BACK_TO_MENU}"


def transfer_failed(reason: str) -> str:
    return f"Erro: {reason}\n{BACK_TO_MENU}"


def history_line(sent: bool, amount: str, counterpart: str) -> str:
    if sent:
        return f"Enviado {amount} para {counterpart}"
    return f"Recebido {amount} de {counterpart}"
