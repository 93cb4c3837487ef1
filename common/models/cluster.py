"""Cluster topology configuration models."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from common.utils import load_yaml


class RuntimeConfig(BaseModel):
    """How to find and launch the runtime of a node process."""
    tool_kind: str = Field(default="python", description="Tool family used for resolution")
    tool_name: Optional[str] = Field(
        default=None,
        description="Logical tool name resolved per host (toolchains file or tools tree)"
    )
    executable: str = Field(default="python3", description="Executable name inside <home>/bin")
    args: list[str] = Field(default_factory=list, description="Extra launch arguments")


class NodeConfig(BaseModel):
    """A single node: logical id bound to a physical host."""
    id: str = Field(..., description="Node identifier, unique within its array")
    hostname: str = Field(..., description="Host the node process runs on")


class NodeArrayConfig(BaseModel):
    """A named, homogeneous group of nodes playing one role."""
    id: str = Field(..., description="Array identifier, unique within the cluster")
    nodes: list[NodeConfig] = Field(default_factory=list)
    runtime: Optional[RuntimeConfig] = Field(default=None)
    
    @model_validator(mode="after")
    def _check_unique_nodes(self) -> "NodeArrayConfig":
        seen = set()
        for node in self.nodes:
            if node.id in seen:
                raise ValueError(f"Duplicate node id '{node.id}' in array '{self.id}'")
            seen.add(node.id)
        return self
    
    def node(self, node_id: str) -> NodeConfig:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(f"No node '{node_id}' in array '{self.id}'")


class ClusterConfig(BaseModel):
    """Ordered set of node arrays making up one experiment topology."""
    name: str = Field(default="perf", description="Cluster name")
    node_arrays: list[NodeArrayConfig] = Field(default_factory=list)
    runtime: Optional[RuntimeConfig] = Field(
        default=None,
        description="Default runtime for arrays that do not declare one"
    )
    
    @model_validator(mode="after")
    def _check_unique_arrays(self) -> "ClusterConfig":
        seen = set()
        for array in self.node_arrays:
            if array.id in seen:
                raise ValueError(f"Duplicate node array id '{array.id}'")
            seen.add(array.id)
        return self
    
    def node_array(self, array_id: str) -> NodeArrayConfig:
        """Get an array configuration by id."""
        for array in self.node_arrays:
            if array.id == array_id:
                return array
        raise KeyError(f"No node array '{array_id}'")
    
    def nodes_in(self, array_id: str) -> list[NodeConfig]:
        return list(self.node_array(array_id).nodes)
    
    def runtime_of(self, array_id: str) -> RuntimeConfig:
        """Effective runtime of an array, falling back to the cluster default."""
        return self.node_array(array_id).runtime or self.runtime or RuntimeConfig()
    
    def node_count(self, array_id: Optional[str] = None) -> int:
        """Count nodes in one array, or across all arrays."""
        if array_id is not None:
            return len(self.node_array(array_id).nodes)
        return sum(len(array.nodes) for array in self.node_arrays)
    
    def participant_count(self) -> int:
        """Barrier parties for a synchronized phase: every node plus the driver."""
        return self.node_count() + 1
    
    @classmethod
    def from_yaml(cls, path: str | Path) -> "ClusterConfig":
        return cls(**load_yaml(path))
