from tollgate.constants import TOOL_OUTPUT_LIMIT


def format_lines_with_pagination(
    content: str,
    offset: int = 1,
    limit: int = 500,
) -> str:
    lines = content.split("\n")
    total_lines = len(lines)

    offset = max(1, min(offset, total_lines))
    start_idx = offset - 1
    end_idx = min(start_idx + limit, total_lines)

    output_lines = [f"{start_idx + i + 1:>6}|{line}" for i, line in enumerate(lines[start_idx:end_idx])]

    header = f"[{total_lines} lines]"
    if start_idx > 0 or end_idx < total_lines:
        header = f"[{total_lines} lines, showing {offset}-{end_idx}]"

    return header + "\n" + "\n".join(output_lines)


def clip_output(content: str, limit: int = TOOL_OUTPUT_LIMIT) -> str:
    if len(content) <= limit:
        return content
    return content[:limit] + f"\n... [truncated {len(content) - limit} chars]"
