import logging
from datetime import datetime
from typing import List, Optional, TypedDict

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langgraph.graph import StateGraph, START, END

from querycraft.core.config import EngineSettings, get_settings
from querycraft.core.exceptions import CompilationError
from querycraft.models.models import (
    BackendKind,
    CompiledPrompt,
    GenerationRequest,
    GenerationResult,
    SchemaDescriptor,
    TranscriptEntry,
    resolve_backend_kind,
)
from querycraft.services.completion import CompletionFunc
from querycraft.services.directive_parser import canonicalize_document_text
from querycraft.services.schema_describer import describe_schema, describe_table, list_table_names
from querycraft.utils.performance import async_log_execution_time

# Configure logging
logger = logging.getLogger(__name__)


TABLE_MATCH_SYSTEM_INSTRUCTION = """You are a database expert. Given a natural language query and a list of table/collection names,
identify which table or collection is most likely being referenced in the query.
Return ONLY the name of the table/collection, nothing else."""

TITLE_SYSTEM_INSTRUCTION = """Generate a concise, descriptive title (maximum 50 characters) for a database query.
Only return the title, nothing else."""


def build_table_match_prompt(schema: SchemaDescriptor, question: str) -> CompiledPrompt:
    """Phase 1 prompt: table names only, no columns"""
    user_instruction = f"""Available tables/collections:
{list_table_names(schema)}
Natural language query: {question}

Most relevant table/collection name:"""
    return CompiledPrompt(system_instruction=TABLE_MATCH_SYSTEM_INSTRUCTION, user_instruction=user_instruction)


def build_document_prompt(schema_description: str, question: str, max_rows: int) -> CompiledPrompt:
    """Phase 2 prompt for document stores"""
    system_instruction = f"""You are a MongoDB query generator. Generate a MongoDB query based on the provided schema and natural language query.

Guidelines for MongoDB queries:
1. Return ONLY a valid JSON array for .aggregate() or JSON object for .find(), parseable by a strict JSON parser
2. First line: Comment with collection name: // Collection: collection_name
3. Second line: Comment with operation type: // Operation: find or // Operation: aggregate
4. For .find(): Return a single JSON object with filter conditions
5. For .aggregate(): Return a JSON array of pipeline stages
6. Use MongoDB operators ($match, $group, $project, $sort, etc.) correctly
7. Convert string numbers to proper numeric types using $toInt or $toDouble in $project before calculations
8. Ensure $subtract operations have exactly two arguments
9. Perform type conversions in $project before calculations or comparisons
10. Output JSON in a single line without breaks, indentation, or extra spaces
11. Exclude explanations, markdown, or any non-JSON content
12. Apply $limit: {max_rows} if no limit specified
13. Validate schema field references to match provided schema
14. Handle date operations with $dateFromString or $dateToString when needed
15. Use $exists for null/undefined checks
16. For text searches, use $text with $search when appropriate"""

    user_instruction = f"""Schema:
{schema_description}
Natural Language Query:
{question}

MongoDB Query:"""
    return CompiledPrompt(system_instruction=system_instruction, user_instruction=user_instruction)


def build_relational_prompt(schema_description: str, question: str, max_rows: int, dialect: str) -> CompiledPrompt:
    """Phase 2 prompt for relational stores"""
    system_instruction = f"""You are a {dialect} query generator. Generate a SQL query based on the provided schema and natural language query.

For {dialect} queries, follow these rules:
1. Use standard SQL syntax compatible with {dialect}
2. Include proper table aliases when joining tables
3. Use appropriate WHERE clauses for filtering
4. Use GROUP BY, HAVING, ORDER BY as needed
5. Limit results with LIMIT {max_rows} if no limit is specified
6. Use proper SQL functions for calculations
7. Do not include any comments or explanations in the output
8. Do not include markdown formatting (no ```sql tags)
9. Return only the raw SQL query text"""

    user_instruction = f"""Schema:
{schema_description}
Natural Language Query: {question}

SQL Query:"""
    return CompiledPrompt(system_instruction=system_instruction, user_instruction=user_instruction)


class CompilerState(TypedDict):
    """State carried through the compilation graph"""
    request: GenerationRequest
    matched_table: Optional[str]
    schema_description: str
    focused: bool
    prompt: Optional[CompiledPrompt]
    directive_text: str
    messages: List[BaseMessage]
    transcript: List[TranscriptEntry]


def _record(state: CompilerState, phase: str, prompt: CompiledPrompt, response: Optional[str]):
    messages = list(state["messages"])
    transcript = list(state["transcript"])
    if prompt.system_instruction:
        messages.append(SystemMessage(content=prompt.system_instruction))
        transcript.append(TranscriptEntry(phase=phase, role="system", content=prompt.system_instruction))
    messages.append(HumanMessage(content=prompt.user_instruction))
    transcript.append(TranscriptEntry(phase=phase, role="user", content=prompt.user_instruction))
    if response is not None:
        messages.append(AIMessage(content=response))
        transcript.append(TranscriptEntry(phase=phase, role="assistant", content=response))
    return messages, transcript


class QueryCompiler:
    """
    Two-phase natural language to query compiler.

    Phase 1 asks the provider which table the question is about, using only
    table names, so that phase 2 only pays for one table's columns. Phase 2
    generates the backend-specific query text.
    """

    def __init__(self, complete: CompletionFunc, settings: Optional[EngineSettings] = None):
        self.complete = complete
        self.settings = settings or get_settings()
        self.graph = self._build_graph()

    def _build_graph(self):
        workflow = StateGraph(CompilerState)

        workflow.add_node("match_table", self._match_table)
        workflow.add_node("describe_schema", self._describe_schema)
        workflow.add_node("generate", self._generate)

        workflow.add_conditional_edges(
            START,
            self._needs_table_match,
            {
                "match": "match_table",
                "skip": "describe_schema"
            }
        )
        workflow.add_edge("match_table", "describe_schema")
        workflow.add_edge("describe_schema", "generate")
        workflow.add_edge("generate", END)

        return workflow.compile()

    @staticmethod
    def _needs_table_match(state: CompilerState) -> str:
        return "match" if len(state["request"].db_schema.tables) > 1 else "skip"

    async def _match_table(self, state: CompilerState) -> dict:
        """Find the table the question refers to; failure only widens the schema"""
        request = state["request"]
        prompt = build_table_match_prompt(request.db_schema, request.natural_language_text)

        try:
            response = await self.complete(prompt.system_instruction, prompt.user_instruction)
        except Exception as e:
            logger.warning(f"Error finding matching table, using full schema: {str(e)}")
            messages, transcript = _record(state, "table_match", prompt, None)
            return {"matched_table": None, "messages": messages, "transcript": transcript}

        matched_table = response.strip().strip("`'\"").strip()
        logger.debug(f"Schema matching returned table: {matched_table}")

        messages, transcript = _record(state, "table_match", prompt, response)
        return {"matched_table": matched_table or None, "messages": messages, "transcript": transcript}

    def _describe_schema(self, state: CompilerState) -> dict:
        schema = state["request"].db_schema
        matched_table = state.get("matched_table")

        if matched_table and len(schema.tables) > 1:
            table = schema.table(matched_table)
            if table is not None:
                return {"schema_description": describe_table(table), "focused": True}
            logger.warning(f"Matching table \"{matched_table}\" not found in schema, using full schema")

        return {"schema_description": describe_schema(schema), "focused": False}

    async def _generate(self, state: CompilerState) -> dict:
        request = state["request"]

        if request.backend_kind == BackendKind.DOCUMENT:
            prompt = build_document_prompt(
                state["schema_description"], request.natural_language_text, self.settings.max_rows
            )
        else:
            prompt = build_relational_prompt(
                state["schema_description"],
                request.natural_language_text,
                self.settings.max_rows,
                self.settings.sql_dialect,
            )

        try:
            response = await self.complete(prompt.system_instruction, prompt.user_instruction)
        except Exception as e:
            logger.error(f"Error generating query: {str(e)}")
            raise CompilationError(f"Failed to generate query: {str(e)}") from e

        directive_text = response.strip()
        if request.backend_kind == BackendKind.DOCUMENT:
            directive_text = canonicalize_document_text(directive_text)

        messages, transcript = _record(state, "generation", prompt, response)
        return {
            "prompt": prompt,
            "directive_text": directive_text,
            "messages": messages,
            "transcript": transcript,
        }

    @async_log_execution_time
    async def compile_and_generate(
        self,
        backend_kind,
        schema: SchemaDescriptor,
        natural_language_text: str,
    ) -> GenerationResult:
        """
        Generate query text for a natural-language question.

        Args:
            backend_kind: BackendKind, or a data source type such as "mongodb"
            schema: The stored schema of the target data source
            natural_language_text: The user's question

        Returns:
            GenerationResult with the directive text and the instructions used

        Raises:
            UnsupportedBackendError: If the backend kind is unknown; no provider call is made
            CompilationError: If the provider fails during generation
        """
        kind = resolve_backend_kind(backend_kind)
        request = GenerationRequest(
            backend_kind=kind,
            db_schema=schema or SchemaDescriptor(),
            natural_language_text=natural_language_text,
        )
        logger.info(f"Generating {kind.value} query for: {natural_language_text}")

        initial_state: CompilerState = {
            "request": request,
            "matched_table": None,
            "schema_description": "",
            "focused": False,
            "prompt": None,
            "directive_text": "",
            "messages": [],
            "transcript": [],
        }

        result = await self.graph.ainvoke(initial_state)

        prompt: CompiledPrompt = result["prompt"]
        logger.debug(f"Generated query: {result['directive_text']}")

        return GenerationResult(
            directive_text=result["directive_text"],
            instruction_text=prompt.instruction_text,
            matched_table=result.get("matched_table"),
            focused=result.get("focused", False),
            transcript=result.get("transcript", []),
        )

    async def generate_title(self, natural_language_text: str) -> str:
        """
        Ask the provider for a short title for a query.

        Falls back to a timestamped title when the provider fails.
        """
        try:
            title = await self.complete(TITLE_SYSTEM_INSTRUCTION, natural_language_text)
            title = title.strip().strip("\"'").strip()
            if title:
                return title[:50]
        except Exception as e:
            logger.error(f"Error generating query title: {str(e)}")
        return f"Query {datetime.now().isoformat()}"
