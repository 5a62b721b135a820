"""Helpers for OpenAI structured output."""


def strict_schema(schema: dict) -> dict:
    """Make a pydantic JSON schema acceptable to structured-output strict mode.

    Strict mode wants every property listed in ``required`` (defaults
    included) and ``additionalProperties: false`` on every object, nested
    ``$defs`` entries too.
    Applied via: model_config = ConfigDict(json_schema_extra=strict_schema)
    """
    for node in (schema, *schema.get("$defs", {}).values()):
        node["required"] = list(node.get("properties", {}))
        node["additionalProperties"] = False
    return schema
