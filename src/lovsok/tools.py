"""Tool-call requests from the reasoning model, validated at the boundary.

Each tool is a pydantic model tagged by its tool name. Arguments that do not
fit the declared schema are turned into a ``ToolCallError`` value that is
sent back to the model instead of aborting the request.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Optional, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

logger = logging.getLogger(__name__)

LEGAL_DOCUMENTS_TOOL = "search_lovdata_legal_documents"
LEGAL_PRACTICE_TOOL = "search_lovdata_legal_practice"
TOOL_NAMES = (LEGAL_DOCUMENTS_TOOL, LEGAL_PRACTICE_TOOL)

LawTypeName = Literal["Lov", "Forskrift", "Vedtak", "Cirkulær", "Rundskriv", "Instruks", "Reglement", "Vedlegg"]


class _ToolArguments(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    query: str = Field(min_length=1, max_length=1000)

    @field_validator("query")
    @classmethod
    def strip_query(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("query must contain text")
        return v


class LegalDocumentSearch(_ToolArguments):
    """Search the indexed legal archive."""

    tool: Literal["search_lovdata_legal_documents"] = LEGAL_DOCUMENTS_TOOL
    law_type: Optional[LawTypeName] = Field(default=None, alias="lawType")
    year: Optional[int] = Field(default=None, ge=1900, le=2100)
    ministry: Optional[str] = Field(default=None, max_length=200)
    page: int = Field(default=1, ge=1, le=100)
    page_size: Optional[int] = Field(default=None, alias="pageSize", ge=1, le=100)


class LegalPracticeSearch(_ToolArguments):
    """Search the legal site on the web for decisions and practice."""

    tool: Literal["search_lovdata_legal_practice"] = LEGAL_PRACTICE_TOOL
    num: Optional[int] = Field(default=None, ge=1, le=100)


ToolRequest = Annotated[Union[LegalDocumentSearch, LegalPracticeSearch], Field(discriminator="tool")]
_TOOL_ADAPTER: TypeAdapter[ToolRequest] = TypeAdapter(ToolRequest)


@dataclass
class ToolCall:
    """A validated tool call, correlated with the model's call id."""

    call_id: str
    request: Union[LegalDocumentSearch, LegalPracticeSearch]

    @property
    def name(self) -> str:
        return self.request.tool


@dataclass
class ToolCallError:
    """A rejected tool call; its payload is returned to the model as the tool result."""

    call_id: str
    name: str
    message: str
    details: list[dict[str, Any]] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "details": self.details,
            "_guidance": "Rett argumentene etter skjemaet og prøv igjen.",
        }


def parse_tool_call(name: str, arguments: Union[str, dict[str, Any], None], call_id: str) -> ToolCall | ToolCallError:
    """
    Validate one tool call from the model.

    Args:
        name: Tool name requested by the model
        arguments: JSON-encoded (or already decoded) arguments
        call_id: Correlation id from the model

    Returns:
        ToolCall on success, ToolCallError describing the problem otherwise
    """
    if name not in TOOL_NAMES:
        return ToolCallError(call_id, name, f"Ukjent verktøy: {name}")

    if arguments is None or arguments == "":
        arguments = {}
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError as exc:
            return ToolCallError(call_id, name, f"Argumentene er ikke gyldig JSON: {exc.msg}")
    if not isinstance(arguments, dict):
        return ToolCallError(call_id, name, "Argumentene må være et JSON-objekt")

    try:
        request = _TOOL_ADAPTER.validate_python({**arguments, "tool": name})
    except ValidationError as exc:
        details = [
            {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
            for error in exc.errors(include_url=False)
        ]
        logger.info("Rejected %s call %s: %s", name, call_id, details)
        return ToolCallError(call_id, name, "Ugyldige argumenter", details)
    return ToolCall(call_id=call_id, request=request)


def tool_declarations(include_web_search: bool = True) -> list[dict[str, Any]]:
    """OpenAI-format function declarations for the available tools."""
    declarations = [
        {
            "type": "function",
            "function": {
                "name": LEGAL_DOCUMENTS_TOOL,
                "description": (
                    "Søk i Lovdatas juridiske dokumenter (lover, forskrifter, vedtak m.m.). "
                    "Vurder resultatene: er de irrelevante, søk på nytt med mer presise søkeord, "
                    "en annen dokumenttype eller et annet år."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "query": {
                            "type": "string",
                            "description": "Relevante juridiske søkeord fra brukerens spørsmål.",
                        },
                        "lawType": {
                            "type": "string",
                            "enum": list(get_args(LawTypeName)),
                            "description": "Dokumenttype. Start med Lov eller Forskrift hvis ikke spesifisert.",
                        },
                        "year": {"type": "integer", "description": "År for dokumentet"},
                        "ministry": {
                            "type": "string",
                            "description": "Departement, f.eks. Justis- og beredskapsdepartementet",
                        },
                        "page": {"type": "integer", "description": "Sidenummer (start med 1)", "default": 1},
                        "pageSize": {
                            "type": "integer",
                            "description": "Antall resultater per side (maks 20)",
                            "default": 5,
                        },
                    },
                    "required": ["query"],
                    "additionalProperties": False,
                },
            },
        }
    ]
    if include_web_search:
        declarations.append(
            {
                "type": "function",
                "function": {
                    "name": LEGAL_PRACTICE_TOOL,
                    "description": (
                        "Søk direkte på lovdata.no etter rettsavgjørelser, kunngjøringer og praksis. "
                        "Bruk når spørsmålet gjelder hvordan regler anvendes i praksis."
                    ),
                    "parameters": {
                        "type": "object",
                        "properties": {
                            "query": {"type": "string", "description": "Søkeord"},
                            "num": {"type": "integer", "description": "Antall resultater (10-20)"},
                        },
                        "required": ["query"],
                        "additionalProperties": False,
                    },
                },
            }
        )
    return declarations
