import enum
import textwrap

import pytest

from warmstart.domain import ModuleDescriptor
from warmstart.factories import ModuleCatalog, import_descriptor
from warmstart.loader import LazyModuleLoader


class WorkerType(enum.Enum):
    THUMBNAILS = "thumbnails"
    REPORTS = "reports"


@pytest.fixture
def reports_package(tmp_path, monkeypatch):
    (tmp_path / "lazy_reports.py").write_text(
        textwrap.dedent(
            """
            from warmstart.domain import ModuleDescriptor
            from warmstart.registry import registration

            MODULE = ModuleDescriptor("reports", [registration("renderer", lambda: "pdf")])

            def describe():
                return ModuleDescriptor("reports-v2", [])

            NOT_A_MODULE = 42
            """
        )
    )
    monkeypatch.syspath_prepend(str(tmp_path))
    return "lazy_reports"


@pytest.mark.asyncio
async def test_import_descriptor_imports_on_first_call(reports_package):
    factory = import_descriptor(f"{reports_package}:MODULE")

    descriptor = await factory()

    assert isinstance(descriptor, ModuleDescriptor)
    assert descriptor.id == "reports"


@pytest.mark.asyncio
async def test_callable_attributes_are_called(reports_package):
    descriptor = await import_descriptor(f"{reports_package}:describe")()

    assert descriptor.id == "reports-v2"


@pytest.mark.asyncio
async def test_attribute_must_be_a_descriptor(reports_package):
    with pytest.raises(TypeError, match="is not a ModuleDescriptor"):
        await import_descriptor(f"{reports_package}:NOT_A_MODULE")()


@pytest.mark.parametrize("reference", ["lazy_reports", ":MODULE", "lazy_reports:"])
def test_references_must_name_module_and_attribute(reference):
    with pytest.raises(ValueError, match="must look like"):
        import_descriptor(reference)


@pytest.mark.asyncio
async def test_loader_loads_imported_descriptors(reports_package):
    loader = LazyModuleLoader()

    container = await loader.load(import_descriptor(f"{reports_package}:MODULE"))

    assert container["renderer"] == "pdf"


def test_catalog_maps_keys_to_factories():
    catalog = ModuleCatalog[WorkerType]()
    factory = catalog.register(WorkerType.REPORTS, lambda: ModuleDescriptor("reports", []))

    assert catalog.factory_for(WorkerType.REPORTS) is factory
    assert WorkerType.REPORTS in catalog
    assert WorkerType.THUMBNAILS not in catalog
    assert list(catalog) == [WorkerType.REPORTS]
    assert len(catalog) == 1


def test_catalog_rejects_unknown_and_duplicate_keys():
    catalog = ModuleCatalog[WorkerType]()
    catalog.register(WorkerType.REPORTS, lambda: ModuleDescriptor("reports", []))

    with pytest.raises(KeyError, match="No module registered for"):
        catalog.factory_for(WorkerType.THUMBNAILS)
    with pytest.raises(ValueError, match="already registered"):
        catalog.register(WorkerType.REPORTS, lambda: ModuleDescriptor("reports", []))


@pytest.mark.asyncio
async def test_catalog_loads_through_a_loader():
    catalog = ModuleCatalog[WorkerType]()
    catalog.register(WorkerType.THUMBNAILS, lambda: ModuleDescriptor("thumbnails", []))
    loader = LazyModuleLoader()

    first = await catalog.load(loader, WorkerType.THUMBNAILS)
    second = await catalog.load(loader, WorkerType.THUMBNAILS)

    assert first is second
    assert first.id == "thumbnails"
