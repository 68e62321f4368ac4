from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from nodecascade.logging import get_logger
from nodecascade.storage.models import WorkflowRecord

logger = get_logger(__name__)

STOP_SENTINEL = "f8Tsc"
STOP_INSTRUCTION = f'\n\nIf none matched, ONLY output "{STOP_SENTINEL}".'

COMPANY_ATTRIBUTIONS = frozenset({"company_data", "company_related_data"})


class NodeKind(str, Enum):
    PROMPT = "promptTemplate"
    PROMPT_FRAGMENT = "promptPiece"
    DATASET = "dataset"
    INGEST = "ingest"
    VARIABLE = "variable"
    FRAMEWORK = "framework"
    AGENT = "agent"
    WEB_INTEGRATION = "integration"
    DECORATIVE = "decorative"

    @classmethod
    def parse(cls, tag: Optional[str]) -> "NodeKind":
        try:
            kind = cls(tag)
        except ValueError:
            return cls.DECORATIVE
        return kind


EXECUTABLE_KINDS = frozenset(kind for kind in NodeKind if kind is not NodeKind.DECORATIVE)


class _Config(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)


class PromptPart(_Config):
    """One ordered piece of a prompt: literal text, a dependency or a framework."""

    type: str = "text"
    value: str = ""
    workflow_id: Optional[str] = Field(None, alias="workflowId")
    triggers_execution: Optional[bool] = Field(None, alias="triggersExecution")
    system_prompt_id: Optional[str] = Field(None, alias="systemPromptId")
    framework_name: Optional[str] = Field(None, alias="frameworkName")

    @field_validator("value", mode="before")
    @classmethod
    def _stringify_value(cls, value: Any) -> str:
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)

    @property
    def is_dependency(self) -> bool:
        return self.type == "dependency"

    @property
    def triggers(self) -> bool:
        return self.triggers_execution is not False


class FieldMapping(_Config):
    domain: Optional[str] = None
    field_key: Optional[str] = None


class OutputDestination(_Config):
    destination_name: str = ""
    enabled: bool = False
    field_mapping: Optional[FieldMapping] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class SharedCacheOutput(_Config):
    enabled: bool = False
    shared_cache_id: Optional[str] = None
    shared_cache_name: Optional[str] = None


class SchemaMapping(_Config):
    """Maps a path in a source node's output onto one master-data field."""

    node_id: Optional[str] = Field(None, alias="nodeId")
    workflow_id: Optional[str] = Field(None, alias="workflowId")
    node_label: Optional[str] = Field(None, alias="nodeLabel")
    json_path: str = Field("", alias="jsonPath")
    target_domain: Optional[str] = Field(None, alias="targetDomain")
    target_field_key: Optional[str] = Field(None, alias="targetFieldKey")


class NodeConfig(_Config):
    """Flags shared by every node kind."""

    paused: bool = False
    fetch_live: bool = Field(False, alias="fetchLive")
    prompt_parts: List[PromptPart] = Field(default_factory=list, alias="promptParts")
    integration_id: Optional[str] = Field(None, alias="integrationId")
    ingest_point_id: Optional[str] = Field(None, alias="ingestPointId")
    output_destinations: List[OutputDestination] = Field(
        default_factory=list, alias="outputDestinations"
    )
    is_abi_output: bool = Field(False, alias="isAbiOutput")
    is_abivc_output: bool = Field(False, alias="isAbiVCOutput")
    is_master_data_output: bool = Field(False, alias="isMasterDataOutput")
    master_data_mapping: Optional[FieldMapping] = Field(None, alias="masterDataMapping")
    shared_cache_outputs: List[SharedCacheOutput] = Field(
        default_factory=list, alias="sharedCacheOutputs"
    )

    @field_validator("prompt_parts", "output_destinations", "shared_cache_outputs", mode="before")
    @classmethod
    def _null_list(cls, value: Any) -> Any:
        return value if isinstance(value, list) else []


class PromptConfig(NodeConfig):
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(
        None, validation_alias=AliasChoices("maxTokens", "max_tokens")
    )
    web_search: bool = Field(False, alias="webSearch")
    enable_stop_trigger: bool = Field(False, alias="enableStopTrigger")


class PromptFragmentConfig(NodeConfig):
    text: Optional[str] = None


class DatasetConfig(NodeConfig):
    source_type: Optional[str] = Field(None, alias="sourceType")
    dataset_id: Optional[str] = Field(None, alias="datasetId")
    shared_cache_id: Optional[str] = Field(None, alias="sharedCacheId")
    shared_cache_name: Optional[str] = Field(None, alias="sharedCacheName")
    data: Any = None


class IngestConfig(NodeConfig):
    pass


class VariableConfig(NodeConfig):
    name: Optional[str] = None
    ssot_map_mode: bool = Field(False, alias="ssotMapMode")
    ssot_map_dependencies: List[SchemaMapping] = Field(
        default_factory=list, alias="ssotMapDependencies"
    )

    @field_validator("ssot_map_dependencies", mode="before")
    @classmethod
    def _null_mappings(cls, value: Any) -> Any:
        return value if isinstance(value, list) else []

    @property
    def mappings(self) -> List[SchemaMapping]:
        return list(self.ssot_map_dependencies) if self.ssot_map_mode else []


class FrameworkConfig(NodeConfig):
    name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[str] = None
    schema_: Any = Field(None, alias="schema")


class AgentConfig(NodeConfig):
    execution_type: str = Field("ssot_update", alias="executionType")
    source_node_id: Optional[str] = Field(None, alias="sourceNodeId")
    source_node_label: Optional[str] = Field(None, alias="sourceNodeLabel")
    ssot_config: Dict[str, Any] = Field(default_factory=dict, alias="ssotConfig")

    @field_validator("execution_type", mode="before")
    @classmethod
    def _default_type(cls, value: Any) -> str:
        return value or "ssot_update"


class WebIntegrationConfig(NodeConfig):
    capability: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


CONFIG_MODELS: Dict[NodeKind, type] = {
    NodeKind.PROMPT: PromptConfig,
    NodeKind.PROMPT_FRAGMENT: PromptFragmentConfig,
    NodeKind.DATASET: DatasetConfig,
    NodeKind.INGEST: IngestConfig,
    NodeKind.VARIABLE: VariableConfig,
    NodeKind.FRAMEWORK: FrameworkConfig,
    NodeKind.AGENT: AgentConfig,
    NodeKind.WEB_INTEGRATION: WebIntegrationConfig,
}


@dataclass(frozen=True)
class Node:
    id: str
    kind: NodeKind
    type_tag: str
    label: str
    config: NodeConfig

    @property
    def is_source(self) -> bool:
        if self.kind is NodeKind.INGEST:
            return True
        return (
            self.kind is NodeKind.DATASET
            and getattr(self.config, "source_type", None) == "company_ingest"
        )

    @property
    def dependency_parts(self) -> List[PromptPart]:
        return [part for part in self.config.prompt_parts if part.is_dependency]


@dataclass
class WorkflowGraph:
    """Executable view of a stored workflow; decorative nodes are dropped."""

    id: str
    name: str
    nodes: List[Node]
    variables: List[Dict[str, Any]] = field(default_factory=list)
    settings: Dict[str, Any] = field(default_factory=dict)
    parent_id: Optional[str] = None

    def __post_init__(self) -> None:
        self.node_map: Dict[str, Node] = {node.id: node for node in self.nodes}

    @property
    def attribution(self) -> str:
        return (self.settings or {}).get("data_attribution") or "company_data"

    @property
    def is_company_relevant(self) -> bool:
        return self.attribution in COMPANY_ATTRIBUTIONS

    @property
    def source_node(self) -> Optional[Node]:
        return next((node for node in self.nodes if node.is_source), None)

    def get(self, node_id: str) -> Optional[Node]:
        return self.node_map.get(node_id)

    def variable_value(self, name: Optional[str]) -> Any:
        for variable in self.variables or []:
            if isinstance(variable, dict) and variable.get("name") == name:
                return variable.get("value") or ""
        return ""


def parse_node(raw: Dict[str, Any], *, workflow_id: str = "") -> Node:
    tag = raw.get("type") or ""
    kind = NodeKind.parse(tag)
    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
    label = raw.get("label") or data.get("label") or tag
    config_model = CONFIG_MODELS.get(kind, NodeConfig)
    raw_config = raw.get("config") if isinstance(raw.get("config"), dict) else {}
    try:
        config = config_model.model_validate(raw_config)
    except ValidationError as exc:
        logger.warning(
            "node_config_invalid",
            workflow_id=workflow_id,
            node_id=raw.get("id"),
            node_type=tag,
            errors=exc.error_count(),
        )
        config = config_model()
    return Node(id=str(raw.get("id")), kind=kind, type_tag=tag, label=label, config=config)


def parse_workflow(record: WorkflowRecord) -> WorkflowGraph:
    nodes = [
        parse_node(raw, workflow_id=record.id)
        for raw in (record.nodes or [])
        if isinstance(raw, dict) and raw.get("id")
    ]
    return WorkflowGraph(
        id=record.id,
        name=record.name,
        nodes=[node for node in nodes if node.kind in EXECUTABLE_KINDS],
        variables=list(record.variables or []),
        settings=dict(record.settings or {}),
        parent_id=record.parent_id,
    )
