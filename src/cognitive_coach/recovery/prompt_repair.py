"""Prompt rewriting for failed generations.

Each error type has an escalation ladder keyed on the attempt number: the
first retry adds instructions, the second pins an exact structure, the
third asks for the smallest acceptable answer.
"""

from __future__ import annotations

from cognitive_coach.recovery.errors import ErrorType, extract_missing_fields

DEFAULT_EXAMPLE = '{"field": "value"}'

_STAGE_EXAMPLES: dict[str, str] = {
    "s0": '{"status": "clarification_needed", "ai_question": "Your question here"}',
    "s1": '[{"id": "example-id", "title": "Example Title", "summary": "Brief summary"}]',
    "s2": '{"mermaidChart": "graph TD\\n  A --> B", "metaphor": "Learning is like..."}',
    "s3": (
        '{"actionPlan": [{"id": "step-1", "text": "Action text", "isCompleted": false}], '
        '"kpis": ["KPI 1"]}'
    ),
    "s4": (
        '{"analysis": "Analysis text", "suggestions": ["Suggestion 1"], '
        '"encouragement": "Encouragement text"}'
    ),
}

_TIMEOUT_PROMPT_PREFIX = 500


def get_example_format_for_error(error_type: ErrorType, stage: str | None = None) -> str:
    """Stage-shaped JSON example; only parse errors get a stage-specific one."""
    if error_type != ErrorType.PARSE_ERROR or not stage:
        return DEFAULT_EXAMPLE
    return _STAGE_EXAMPLES.get(stage.lower(), DEFAULT_EXAMPLE)


def adjust_prompt_based_on_error(
    prompt: str,
    error_type: ErrorType,
    error_details: str | None = None,
    attempt: int = 1,
    stage: str | None = None,
) -> str:
    """Rewrite ``prompt`` for the next attempt given the last failure.

    Rate limits are not a prompt problem; the prompt is returned unchanged.
    """
    example = get_example_format_for_error(ErrorType.PARSE_ERROR, stage)

    if error_type == ErrorType.EMPTY_RESPONSE:
        if attempt <= 1:
            return (
                f"{prompt}\n\nCRITICAL: You must provide a complete response. "
                "Do not return empty content."
            )
        if attempt == 2:
            return (
                f"{prompt}\n\nIMPORTANT: This is attempt #{attempt}. Please ensure you "
                "provide a valid, complete JSON response with all required fields."
            )
        return (
            "SIMPLIFIED REQUEST: Please provide the minimal required response "
            f"in JSON format:\n{example}"
        )

    if error_type == ErrorType.PARSE_ERROR:
        if attempt <= 1:
            return (
                f"{prompt}\n\nFORMATTING REQUIREMENTS:\n"
                "1. Return ONLY valid JSON, no additional text\n"
                "2. Use double quotes for all strings\n"
                "3. Ensure all brackets and braces are properly closed\n"
                "4. Do not include explanatory text before or after JSON\n\n"
                f"Example format:\n{example}"
            )
        if attempt == 2:
            return (
                f"{prompt}\n\nSIMPLIFIED: Return this exact JSON structure with your "
                f"content:\n{example}\n\nReplace the values but keep the exact structure."
            )
        return f"Please return minimal JSON only:\n{example}"

    if error_type == ErrorType.SCHEMA_VALIDATION_ERROR:
        field_info = "\n".join(
            f"- {item.field}: {item.description}"
            for item in extract_missing_fields(error_details)
        )
        if attempt <= 1:
            return (
                f"{prompt}\n\nREQUIRED FIELDS MISSING:\n{field_info}\n\n"
                f"Error details: {error_details or 'Schema validation failed'}\n\n"
                "Please include ALL required fields in your response."
            )
        return (
            f"{prompt}\n\nCRITICAL: Must include these fields:\n{field_info}\n\n"
            "Only return the JSON with these required fields."
        )

    if error_type == ErrorType.TIMEOUT:
        if attempt <= 1:
            return (
                f"{prompt}\n\nTIME CONSTRAINT: Please provide a concise response. "
                "Aim for brevity while maintaining quality."
            )
        return (
            f"BRIEF RESPONSE REQUIRED: {prompt[:_TIMEOUT_PROMPT_PREFIX]}...\n\n"
            "Provide the shortest possible valid response."
        )

    if error_type == ErrorType.RATE_LIMIT:
        return prompt

    if attempt <= 1:
        return (
            f"{prompt}\n\nIMPORTANT: Please read all requirements carefully and "
            "follow the specified format exactly."
        )
    return (
        f"{prompt}\n\nATTEMPT {attempt}: Focus on providing exactly what is "
        "requested. Follow the format precisely."
    )
