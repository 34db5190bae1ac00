"""Built-in remote tool declarations (arithmetic commands served by the workbook client)."""

from __future__ import annotations

from relay_agent.config import ToolDeclaration


def _number(description: str) -> dict:
    return {"type": "number", "description": description}


def _binary(name: str, description: str, first: str, second: str) -> ToolDeclaration:
    return ToolDeclaration(
        name=name,
        description=description,
        input_schema={
            "type": "object",
            "properties": {"param1": _number(first), "param2": _number(second)},
            "required": ["param1", "param2"],
        },
    )


def _unary(name: str, description: str, param: str) -> ToolDeclaration:
    return ToolDeclaration(
        name=name,
        description=description,
        input_schema={
            "type": "object",
            "properties": {"param1": _number(param)},
            "required": ["param1"],
        },
    )


def _aggregate(name: str, description: str) -> ToolDeclaration:
    return ToolDeclaration(
        name=name,
        description=description,
        input_schema={
            "type": "object",
            "properties": {
                "numbers": {
                    "type": "array",
                    "items": {"type": "number"},
                    "minItems": 1,
                    "description": "Array of numbers",
                }
            },
            "required": ["numbers"],
        },
    )


def builtin_declarations() -> list[ToolDeclaration]:
    return [
        _binary("add", "Add two numbers together", "First number", "Second number"),
        _binary(
            "subtract",
            "Subtract the second number from the first",
            "First number (minuend)",
            "Second number (subtrahend)",
        ),
        _binary("multiply", "Multiply two numbers together", "First number", "Second number"),
        _binary(
            "divide",
            "Divide the first number by the second",
            "First number (dividend)",
            "Second number (divisor)",
        ),
        _binary("power", "Raise the first number to the power of the second", "Base number", "Exponent"),
        _unary(
            "sqrt",
            "Calculate the square root of a number",
            "Number to calculate square root of (must be non-negative)",
        ),
        _binary(
            "modulo",
            "Calculate the remainder when dividing the first number by the second",
            "First number (dividend)",
            "Second number (divisor)",
        ),
        _unary("absolute", "Get the absolute value of a number", "Number to get absolute value of"),
        ToolDeclaration(
            name="round",
            description="Round a number to a given number of decimal places",
            input_schema={
                "type": "object",
                "properties": {
                    "param1": _number("Number to round"),
                    "decimals": {
                        "type": "integer",
                        "minimum": 0,
                        "description": "Number of decimal places (default: 0)",
                    },
                },
                "required": ["param1"],
            },
        ),
        _unary("floor", "Round a number down to the nearest integer", "Number to floor"),
        _unary("ceil", "Round a number up to the nearest integer", "Number to ceil"),
        _aggregate("min", "Find the smallest number in a list"),
        _aggregate("max", "Find the largest number in a list"),
        _aggregate("sum", "Add up a list of numbers"),
        _aggregate("average", "Calculate the average of a list of numbers"),
    ]
