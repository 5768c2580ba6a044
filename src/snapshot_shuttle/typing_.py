from typing import Dict, List, TypedDict


class ManifestPayload(TypedDict):
    id: str
    createdAt: str
    sources: List[str]
    totalFiles: int
    totalBytes: int
    relativePath: str


class RepoConfigPayload(TypedDict):
    version: int
    createdAt: str


# relative path under data/ -> raw link target
SymlinkMap = Dict[str, str]
