"""
Unit Tests for the Template Script Generator
Tests template resolution, rendering and caching
"""
import pytest


@pytest.fixture
def templates(tmp_path):
    """Small template tree: foo has a default and an ubuntu override"""
    root = tmp_path / "templates"
    (root / "foo" / "ubuntu").mkdir(parents=True)
    (root / "generic.sh").write_text("echo generic {{integration}}\n")
    (root / "generic.rollback.sh").write_text("echo rollback {{integration}}\n")
    (root / "foo" / "default.sh").write_text("echo foo default\n")
    (root / "foo" / "centos.sh").write_text("echo foo centos\n")
    (root / "foo" / "ubuntu" / "22.04.sh").write_text("echo foo 22.04\n")
    return root


class TestCompileTemplate:
    """Tests for the template language"""

    def test_substitution(self):
        """Test scalar substitution and helpers"""
        from nrinstall.modules.generation.template_engine import compile_template

        template = compile_template("host={{host}} port={{params.port}} q={{quote name}} u={{uppercase host}}")
        text = template.render({"host": "db", "port": 5432, "name": "a b"})
        assert text == "host=db port=5432 q='a b' u=DB"

    def test_missing_and_non_scalar_left_as_is(self):
        """Test unresolvable placeholders stay untouched"""
        from nrinstall.modules.generation.template_engine import compile_template

        template = compile_template("{{missing}} {{nested}} {{flag}}")
        assert template.render({"nested": {"a": 1}, "flag": False}) == "{{missing}} {{nested}} false"

    def test_if_else_blocks(self):
        """Test conditional blocks consume their own lines"""
        from nrinstall.modules.generation.template_engine import compile_template

        source = (
            "start\n"
            "{{#if password}}\n"
            "auth {{password}}\n"
            "{{else}}\n"
            "no auth\n"
            "{{/if}}\n"
            "end\n"
        )
        template = compile_template(source)
        assert template.render({"password": "pw"}) == "start\nauth pw\nend\n"
        assert template.render({}) == "start\nno auth\nend\n"

    def test_inline_and_nested_blocks(self):
        """Test inline and nested conditionals"""
        from nrinstall.modules.generation.template_engine import compile_template

        template = compile_template("env={{#if env}}{{env}}{{else}}prod{{/if}};{{#if a}}A{{#if b}}B{{/if}}{{/if}}")
        assert template.render({"a": True, "b": True}) == "env=prod;AB"
        assert template.render({"env": "dev", "a": True}) == "env=dev;A"

    @pytest.mark.parametrize("source", [
        "{{#if a}}never closed",
        "{{/if}}",
        "{{else}}",
        "{{#if a}}x{{else}}y{{else}}z{{/if}}",
        "{{#each items}}x{{/each}}",
        "{{#if}}x{{/if}}",
    ])
    def test_malformed_blocks(self, source):
        """Test unbalanced or unsupported block tags fail to compile"""
        from nrinstall.modules.generation.template_engine import compile_template
        from nrinstall.core.exceptions import ScriptGenerationError

        with pytest.raises(ScriptGenerationError):
            compile_template(source)


class TestTemplateResolution:
    """Tests for layered template lookup"""

    def test_integration_default_beats_generic(self, templates):
        """Test {integration}/default.sh is used when no OS match exists"""
        from nrinstall.modules.generation.template_engine import TemplateScriptGenerator

        generator = TemplateScriptGenerator(templates_dir=templates)
        assert generator.find_template("foo", params={"os": "debian"}) == templates / "foo" / "default.sh"

    def test_falls_back_to_generic(self, templates):
        """Test unknown integrations use generic.sh"""
        from nrinstall.modules.generation.template_engine import TemplateScriptGenerator

        generator = TemplateScriptGenerator(templates_dir=templates)
        assert generator.find_template("bar") == templates / "generic.sh"

    def test_os_and_version_specific(self, templates):
        """Test OS and OS/version templates take precedence"""
        from nrinstall.modules.generation.template_engine import TemplateScriptGenerator

        generator = TemplateScriptGenerator(templates_dir=templates)
        assert generator.find_template("foo", params={"os": "centos"}) == templates / "foo" / "centos.sh"
        assert generator.find_template("foo", params={"version": "22.04"}) == templates / "foo" / "ubuntu" / "22.04.sh"

    def test_operation_suffix(self, templates):
        """Test non-install operations resolve .{operation}.sh files"""
        from nrinstall.modules.generation.template_engine import TemplateScriptGenerator
        from nrinstall.core.exceptions import ScriptGenerationError

        generator = TemplateScriptGenerator(templates_dir=templates)
        assert generator.find_template("foo", "rollback") == templates / "generic.rollback.sh"
        with pytest.raises(ScriptGenerationError):
            generator.find_template("foo", "verify")
        with pytest.raises(ScriptGenerationError):
            generator.find_template("foo", "upgrade")

    @pytest.mark.parametrize("integration,params", [
        ("../etc", {}),
        ("foo", {"os": ".."}),
        ("foo", {"version": "../../x"}),
    ])
    def test_unsafe_lookups_rejected(self, templates, integration, params):
        """Test traversal through the integration name, os or version is rejected"""
        from nrinstall.modules.generation.template_engine import TemplateScriptGenerator
        from nrinstall.core.exceptions import ValidationError

        generator = TemplateScriptGenerator(templates_dir=templates)
        with pytest.raises(ValidationError):
            generator.find_template(integration, params=params)

    def test_no_template_at_all(self, tmp_path):
        """Test an empty template tree is a generation error"""
        from nrinstall.modules.generation.template_engine import TemplateScriptGenerator
        from nrinstall.core.exceptions import ScriptGenerationError

        generator = TemplateScriptGenerator(templates_dir=tmp_path)
        with pytest.raises(ScriptGenerationError):
            generator.find_template("redis")


class TestRendering:
    """Tests for rendering and caches"""

    @pytest.mark.asyncio
    async def test_render_records_template(self, templates):
        """Test rendered scripts carry their template path"""
        from nrinstall.modules.generation.template_engine import TemplateScriptGenerator

        generator = TemplateScriptGenerator(templates_dir=templates)
        script = await generator.render("bar", {"integration": "bar"})
        assert script.text == "echo generic bar\n"
        assert script.template_path == "generic.sh"
        assert script.operation == "install"

    @pytest.mark.asyncio
    async def test_script_cache(self, templates):
        """Test identical requests hit the cache and edits need clear_cache"""
        from nrinstall.modules.generation.template_engine import TemplateScriptGenerator

        generator = TemplateScriptGenerator(templates_dir=templates)
        first = await generator.render("foo", {"os": "debian"})
        (templates / "foo" / "default.sh").write_text("echo changed\n")
        assert await generator.render("foo", {"os": "debian"}) is first

        generator.clear_cache()
        assert (await generator.render("foo", {"os": "debian"})).text == "echo changed\n"

    @pytest.mark.asyncio
    async def test_template_cache_is_bounded(self, templates):
        """Test the compiled template cache evicts oldest entries"""
        from nrinstall.modules.generation.template_engine import TemplateScriptGenerator

        generator = TemplateScriptGenerator(templates_dir=templates, cache_size=1, script_cache_size=1)
        await generator.render("foo", {"os": "debian"})
        await generator.render("bar", {})
        stats = generator.cache_stats()
        assert stats["templates"] == 1
        assert stats["scripts"] == 1

    def test_fingerprint_hides_secrets(self, templates):
        """Test secret values do not appear in cache keys but still distinguish them"""
        from nrinstall.modules.generation.template_engine import TemplateScriptGenerator

        generator = TemplateScriptGenerator(templates_dir=templates)
        a = generator.fingerprint({"license_key": "ABCD1234WXYZ", "port": 1})
        b = generator.fingerprint({"license_key": "OTHERKEY0000", "port": 1})
        assert a != b
        assert a == generator.fingerprint({"port": 1, "license_key": "ABCD1234WXYZ"})
        assert "ABCD1234WXYZ" not in a


class TestPackagedTemplates:
    """Tests for the templates shipped with the package"""

    @pytest.mark.asyncio
    async def test_redis_without_password(self, generator):
        """Test the redis template renders connection details and no password"""
        script = await generator.generate_script(
            "redis", {"redis_host": "localhost", "redis_port": 6379, "integration": "redis"}
        )
        assert "redis-cli -h localhost -p 6379 ping" in script
        assert "password" not in script.lower()
        assert "{{" not in script

    @pytest.mark.asyncio
    async def test_redis_with_password(self, generator):
        """Test the password block renders when a password is given"""
        script = await generator.generate_script(
            "redis", {"redis_host": "cache", "redis_port": 6380, "redis_password": "s3cret"}
        )
        assert "-a s3cret" in script
        assert "PASSWORD: s3cret" in script

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", ["install", "uninstall", "verify", "rollback"])
    async def test_every_operation_resolves(self, generator, operation):
        """Test redis and generic templates exist for every operation"""
        redis = await generator.render("redis", {"redis_host": "h", "redis_port": 1}, operation)
        other = await generator.render("mongodb", {"integration": "mongodb"}, operation)
        assert redis.template_path.startswith("redis/")
        assert other.template_path.startswith("generic")
        assert "mongodb" in other.text
