import pytest

from simvex.config import RepositoryConfig
from simvex.repositories import create_repositories


def make_config(driver: str, tmp_path) -> RepositoryConfig:
    if driver == "file":
        return RepositoryConfig(driver="file", file_path=str(tmp_path / "state" / "repository.json"))
    if driver == "postgres":
        # the relational backend is URL-agnostic; SQLite keeps tests self-contained
        return RepositoryConfig(driver="postgres", database_url=f"sqlite:///{tmp_path / 'repository.db'}")
    return RepositoryConfig(driver="memory")


@pytest.fixture(params=["memory", "file", "postgres"])
def repos(request, tmp_path):
    """A fresh repository bundle for every backend."""
    bundle = create_repositories(make_config(request.param, tmp_path))
    yield bundle
    bundle.close()
