from tollgate.conversation import Message, Role, TextBlock, ToolCallBlock, ToolResultBlock


def tool_name_map(messages: list[Message]) -> dict[str, str]:
    return {tc.id: tc.name for msg in messages if msg.role == Role.ASSISTANT for tc in msg.tool_calls}


def split_blocks(message: Message) -> tuple[list[TextBlock], list[ToolCallBlock], list[ToolResultBlock]]:
    texts, calls, results = [], [], []
    for block in message.content:
        match block:
            case TextBlock():
                texts.append(block)
            case ToolCallBlock():
                calls.append(block)
            case ToolResultBlock():
                results.append(block)
    return texts, calls, results
