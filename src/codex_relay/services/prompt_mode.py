PLAN_MODE_HEADER = (
    "[PLAN MODE ON]",
    "First, output a short numbered plan (2-5 steps).",
    "Then execute/answer based on that plan.",
    "Keep it concise and practical.",
)


def apply_plan_mode(prompt: str, enabled: bool) -> str:
    if not enabled:
        return prompt
    return "\n".join([*PLAN_MODE_HEADER, "", prompt.strip()])
