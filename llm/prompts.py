from typing import Dict, Iterable, List, Optional, Sequence

MAX_HISTORY_TURNS = 10
MAX_KNOWLEDGE_SNIPPETS = 3
MAX_SNIPPET_CHARS = 1500

APOLOGY_MESSAGE = (
    "I apologize, but I'm experiencing technical difficulties. Please try again in a moment."
)
BUDGET_EXCEEDED_MESSAGE = (
    "Thank you for your message! Our automated assistant is unavailable right now. "
    "A member of our team will get back to you shortly."
)

ROLE_BY_SENDER = {"customer": "user", "ai": "assistant", "agent": "assistant"}


def _truncate(text: str, limit: int = MAX_SNIPPET_CHARS) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def build_system_prompt(
    business_name: Optional[str] = None,
    customer_name: Optional[str] = None,
    snippets: Sequence[str] = (),
    business_context: Optional[str] = None,
    session_context: Optional[Dict] = None,
) -> str:
    business = business_name or "our business"
    customer = customer_name or "the customer"

    prompt = f"""You are a helpful WhatsApp customer support assistant for {business}. Your role is to:

1. Provide friendly and professional customer service
2. Answer questions about products, services, and policies using the knowledge base
3. Help resolve customer issues and concerns
4. Escalate complex issues to human agents when needed
5. Keep responses concise (under 300 characters when possible)

Customer Information:
- Customer Name: {customer}
- Business: {business}"""

    session_context = session_context or {}
    if session_context.get("current_flow"):
        prompt += f"\n- Current topic: {session_context['current_flow']}"
    if session_context.get("language"):
        prompt += f"\n- Preferred language: {session_context['language']}"

    if business_context:
        prompt += f"\n\nAbout the business:\n{business_context.strip()}"

    docs = [s for s in snippets if s][:MAX_KNOWLEDGE_SNIPPETS]
    if docs:
        rendered = "\n\n".join(
            f"--- Document {index} ---\n{_truncate(doc)}" for index, doc in enumerate(docs, start=1)
        )
        prompt += f"""

KNOWLEDGE BASE:
The following documents are relevant to the customer's question:

{rendered}

- Use the knowledge base first when it covers the question
- If it does not, say so and offer to connect them with a human agent"""

    prompt += """

Guidelines:
- Always be polite and professional
- If you don't know something, say so and offer to connect them with a human agent
- Maintain conversation context from previous messages
- Respond in the customer's language when possible"""

    return prompt


def history_turns(history: Iterable) -> List[Dict[str, str]]:
    """
    Convert stored messages (anything with sender_type/content) into chat
    turns, keeping the last MAX_HISTORY_TURNS.
    """
    turns = [
        {"role": ROLE_BY_SENDER.get(message.sender_type, "user"), "content": message.content}
        for message in history
        if message.content
    ]
    return turns[-MAX_HISTORY_TURNS:]


def build_messages(system_prompt: str, history: Iterable, user_message: str) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt},
        *history_turns(history),
        {"role": "user", "content": user_message},
    ]
