import pytest

from edpsych_maintenance.repository import InMemoryRepository
from edpsych_maintenance.schema_validator import ModelExpectation, SchemaStatus, SchemaValidator


def full_schema():
    return {
        'User': ['id', 'email', 'name', 'role', 'createdAt'],
        'Profile': ['id', 'userId', 'firstName'],
        'Assessment': ['id', 'title'],
    }


MANIFEST = [
    ModelExpectation('User', ['email', 'role']),
    ModelExpectation('Profile', ['firstName']),
    ModelExpectation('Assessment'),
]


class TestValidateSchema:

    @pytest.mark.asyncio
    async def test_matching_schema_is_valid(self, config):
        repository = InMemoryRepository(schema=full_schema())

        report = await SchemaValidator(repository, config).validate_schema(MANIFEST)

        assert report.status == SchemaStatus.VALID
        assert report.missing_models == []
        assert report.extra_models == []
        assert report.model_issues == []

    @pytest.mark.asyncio
    async def test_missing_model_is_an_error(self, config):
        schema = full_schema()
        del schema['Assessment']

        report = await SchemaValidator(InMemoryRepository(schema=schema), config).validate_schema(MANIFEST)

        assert report.status == SchemaStatus.ERROR
        assert report.missing_models == ['Assessment']

    @pytest.mark.asyncio
    async def test_missing_required_field_is_a_warning(self, config):
        schema = full_schema()
        schema['User'].remove('role')

        report = await SchemaValidator(InMemoryRepository(schema=schema), config).validate_schema(MANIFEST)

        assert report.status == SchemaStatus.WARNING
        assert report.model_issues[0].model == 'User'
        assert report.model_issues[0].issues == ['Missing required field: role']

    @pytest.mark.asyncio
    async def test_extra_models_warn_unless_ignored(self, config):
        schema = full_schema()
        schema['LegacyImport'] = ['id']
        schema['_prisma_migrations'] = ['id']

        report = await SchemaValidator(InMemoryRepository(schema=schema), config).validate_schema(MANIFEST)

        assert report.status == SchemaStatus.WARNING
        assert report.extra_models == ['LegacyImport']

    @pytest.mark.asyncio
    async def test_introspection_failure_is_an_error(self, config):
        repository = InMemoryRepository(schema=full_schema())
        repository.available = False

        report = await SchemaValidator(repository, config).validate_schema(MANIFEST)

        assert report.status == SchemaStatus.ERROR
        assert report.error

    @pytest.mark.asyncio
    async def test_default_manifest_covers_platform_models(self, config):
        validator = SchemaValidator(InMemoryRepository(), config)

        manifest = validator.default_manifest()

        names = [expectation.name for expectation in manifest]
        assert names[:2] == ['User', 'Profile']
        assert 'ParentTeacherCommunication' in names
        assert manifest[0].required_fields == ['email', 'role']
        assert manifest[1].required_fields == ['firstName']

        report = await validator.validate_schema()
        assert report.status == SchemaStatus.ERROR
        assert len(report.missing_models) == len(manifest)


def test_expectation_from_plain_name():
    assert ModelExpectation.from_config('Lesson') == ModelExpectation('Lesson', [])
