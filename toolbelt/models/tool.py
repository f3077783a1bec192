"""
Tool and bundle catalog models.
"""

from enum import Enum
from typing import Optional, Dict, List, Any
from pydantic import BaseModel, Field, validator, root_validator


class InstallMethod(str, Enum):
    """How a tool gets onto the machine."""
    SOURCE_BUILD = "source_build"
    PREBUILT_BINARY = "prebuilt_binary"
    PACKAGE_MANAGER = "package_manager"
    PRE_EXISTING = "pre_existing"


class ToolConfig(BaseModel):
    """A single installable tool as declared in the catalog."""
    id: str = Field(..., description="Unique, stable tool identifier")
    name: str = Field(..., description="Display name")
    description: str = Field(default="", description="Tool description")
    category: str = Field(default="", description="Catalog category")
    language: str = Field(default="", description="Implementation language")
    repository: Optional[str] = Field(None, description="Upstream repository URL")
    binary_name: str = Field(default="", description="Binary looked up on PATH")
    test_command: str = Field(default="--version", description="Arguments that print the version")
    dependencies: List[str] = Field(default_factory=list, description="Tool ids installed first")
    method: InstallMethod = Field(default=InstallMethod.SOURCE_BUILD, description="Install method")
    install_ref: str = Field(default="", description="Script, package name or download URL")
    version: str = Field(default="latest", description="Expected version")
    build_types: Dict[str, str] = Field(default_factory=dict, description="Build type to script flag")

    @root_validator(pre=True)
    def fill_defaults(cls, values: Dict[str, Any]) -> Dict[str, Any]:
        """Derive id, binary name and install ref from the tool name."""
        values = dict(values)
        name = values.get("name") or values.get("id")
        if name:
            values.setdefault("name", name)
            values.setdefault("id", name)
            if not values.get("binary_name"):
                values["binary_name"] = name
            if not values.get("install_ref"):
                method = values.get("method", InstallMethod.SOURCE_BUILD)
                if method == InstallMethod.SOURCE_BUILD:
                    values["install_ref"] = f"install-{name}.sh"
                else:
                    values["install_ref"] = name
        return values

    @validator('dependencies')
    def validate_no_self_dependency(cls, v, values):
        """A tool must not depend on itself."""
        tool_id = values.get("id")
        if tool_id and tool_id in v:
            raise ValueError(f"Tool {tool_id} lists itself as a dependency")
        # Preserve order, drop duplicates
        return list(dict.fromkeys(v))

    def build_flag(self, build_type: str) -> str:
        """Script flag for the given build type, empty if none."""
        return self.build_types.get(build_type, "")

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "name": "ripgrep",
                "description": "Fast recursive grep",
                "category": "core",
                "language": "rust",
                "repository": "https://github.com/BurntSushi/ripgrep.git",
                "binary_name": "rg",
                "dependencies": ["rustup"],
                "build_types": {"minimal": "-m", "standard": "-r", "maximum": "-o"},
                "test_command": "--version"
            }
        }


class BundleConfig(BaseModel):
    """Named, ordered group of tools."""
    name: str = Field(..., description="Bundle name")
    description: str = Field(default="", description="Bundle description")
    category: str = Field(default="", description="Bundle category")
    tools: List[str] = Field(default_factory=list, description="Member tool ids in order")
    includes_bundles: List[str] = Field(default_factory=list, description="Nested bundles")
    tags: List[str] = Field(default_factory=list)

    class Config:
        frozen = True
