"""Tests for the reference monitor."""

import threading

import pytest

from packages.authz import engine as engine_module
from packages.authz.config import AuthzConfig, AuthzMode, ignore_access_control, set_config
from packages.authz.engine import (
    ReferenceMonitor,
    get_engine,
    infer_context,
    init_engine,
    reload_engine,
    reset_engine,
)
from packages.authz.errors import (
    AttributeAuthorizationError,
    AuthorizationUsageError,
    NotAuthorized,
)
from packages.authz.models import (
    Attribute,
    AuthorizationRule,
    DecisionKind,
    DenialReason,
    RuleSet,
    subject_attr,
)
from packages.authz.subjects import GuestUser


class Subject:
    def __init__(self, roles, company_id=24, user_id="u-1"):
        self.roles = roles
        self.company_id = company_id
        self.user_id = user_id

    def __repr__(self):
        return f"Subject({self.roles!r})"


class Branch:
    def __init__(self, company):
        self.company = company


class Project:
    __tablename__ = "projects"

    def __init__(self, company):
        self.branch = Branch(company)


def build_rule_set(*rules: AuthorizationRule) -> RuleSet:
    return RuleSet(
        privileges=["read_projects", "manage_projects"],
        privilege_hierarchy={("manage_projects", None): [("read_projects", None)]},
        auth_rules=list(rules),
        roles=["admin", "member", "guest"],
        role_hierarchy={"admin": ["member"]},
    )


def admin_rule(*attributes) -> AuthorizationRule:
    rule = AuthorizationRule("admin", ["read_projects"], ["projects"])
    for attribute in attributes:
        rule.append_attribute(attribute)
    return rule


@pytest.fixture(autouse=True)
def dev_config():
    set_config(AuthzConfig(mode=AuthzMode.DEVELOPMENT, rules_path="/nonexistent/rules.yaml"))
    yield
    set_config(None)
    reset_engine()


@pytest.fixture
def admin() -> Subject:
    return Subject(["admin"])


@pytest.fixture
def plain_engine() -> ReferenceMonitor:
    """Scenario A: admin may read projects, no attributes."""
    return ReferenceMonitor(build_rule_set(admin_rule()))


@pytest.fixture
def attribute_engine() -> ReferenceMonitor:
    """Scenario B: admin may read projects of company 24."""
    return ReferenceMonitor(build_rule_set(
        admin_rule(Attribute({"branch": {"company": ("equals", 24)}}))
    ))


class TestPermit:
    """permit() decisions."""

    def test_scenario_a_plain_rule(self, plain_engine, admin):
        assert plain_engine.permit("read_projects", context="projects", subject=admin) is True

    def test_scenario_b_attribute_denied(self, attribute_engine, admin):
        with pytest.raises(AttributeAuthorizationError):
            attribute_engine.permit("read_projects", context="projects", subject=admin, obj=Project(5))

    def test_scenario_b_attribute_allowed(self, attribute_engine, admin):
        assert attribute_engine.permit(
            "read_projects", context="projects", subject=admin, obj=Project(24)
        )

    def test_scenario_c_guest_never_matches_member_rule(self):
        engine = ReferenceMonitor(build_rule_set(
            AuthorizationRule("member", ["read_projects"], ["projects"])
        ))
        with pytest.raises(NotAuthorized) as exc_info:
            engine.permit("read_projects", context="projects", subject=Subject([]))
        assert not isinstance(exc_info.value, AttributeAuthorizationError)

    def test_no_rule_is_not_authorized_not_attribute_error(self, attribute_engine):
        with pytest.raises(NotAuthorized) as exc_info:
            attribute_engine.permit("read_projects", context="invoices", subject=Subject(["admin"]))
        assert type(exc_info.value) is NotAuthorized
        assert exc_info.value.reason == "no_rule"

    def test_empty_attributes_grant_regardless_of_object(self, plain_engine, admin):
        assert plain_engine.permit("read_projects", context="projects", subject=admin, obj=Project(5))
        assert plain_engine.permit("read_projects", context="projects", subject=admin, obj=object())

    def test_role_hierarchy(self):
        engine = ReferenceMonitor(build_rule_set(
            AuthorizationRule("member", ["read_projects"], ["projects"])
        ))
        assert engine.permit("read_projects", context="projects", subject=Subject(["admin"]))

    def test_privilege_hierarchy(self):
        engine = ReferenceMonitor(build_rule_set(
            AuthorizationRule("admin", ["manage_projects"], ["projects"])
        ))
        assert engine.permit("read_projects", context="projects", subject=Subject(["admin"]))

    def test_privilege_list_any_suffices(self, plain_engine, admin):
        assert plain_engine.permit(["delete_projects", "read_projects"], context="projects", subject=admin)

    def test_attribute_alternatives_are_ored(self, admin):
        engine = ReferenceMonitor(build_rule_set(admin_rule(
            Attribute({"branch": {"company": ("equals", 5)}}),
            Attribute({"branch": {"company": ("equals", subject_attr("company_id"))}}),
        )))
        assert engine.permit("read_projects", context="projects", subject=admin, obj=Project(24))
        assert engine.permit("read_projects", context="projects", subject=admin, obj=Project(5))
        with pytest.raises(AttributeAuthorizationError):
            engine.permit("read_projects", context="projects", subject=admin, obj=Project(7))

    def test_attribute_rule_without_object_denies(self, attribute_engine, admin):
        with pytest.raises(AttributeAuthorizationError):
            attribute_engine.permit("read_projects", context="projects", subject=admin)

    def test_skip_attribute_test(self, attribute_engine, admin):
        assert attribute_engine.permit(
            "read_projects", context="projects", subject=admin,
            obj=Project(5), skip_attribute_test=True,
        )

    def test_context_inferred_from_object(self, attribute_engine, admin):
        assert attribute_engine.permit("read_projects", subject=admin, obj=Project(24))

    def test_missing_context_is_usage_error(self, plain_engine, admin):
        with pytest.raises(AuthorizationUsageError, match="No context"):
            plain_engine.permit("read_projects", subject=admin, obj=object())

    def test_bad_field_access_is_usage_error(self, attribute_engine, admin):
        with pytest.raises(AuthorizationUsageError):
            attribute_engine.permit("read_projects", context="projects", subject=admin, obj=object())


class TestSubjectResolution:
    """Subject lookup and validation."""

    def test_missing_subject(self, plain_engine):
        with pytest.raises(AuthorizationUsageError, match="No subject"):
            plain_engine.permit("read_projects", context="projects")

    def test_subject_without_roles(self, plain_engine):
        with pytest.raises(AuthorizationUsageError, match="roles"):
            plain_engine.permit("read_projects", context="projects", subject=object())

    @pytest.mark.parametrize("roles", ["admin", [1, 2], [["admin"]], None])
    def test_malformed_roles(self, plain_engine, roles):
        with pytest.raises(AuthorizationUsageError, match="list of labels"):
            plain_engine.permit("read_projects", context="projects", subject=Subject(roles))

    def test_subject_provider(self, admin):
        engine = ReferenceMonitor(build_rule_set(admin_rule()), subject_provider=lambda: admin)
        assert engine.permit("read_projects", context="projects")

    def test_explicit_subject_wins_over_provider(self, admin):
        engine = ReferenceMonitor(build_rule_set(admin_rule()), subject_provider=lambda: admin)
        with pytest.raises(NotAuthorized):
            engine.permit("read_projects", context="projects", subject=GuestUser())

    def test_for_subject_scope(self, plain_engine, admin):
        scope = plain_engine.for_subject(admin)
        assert scope.permit("read_projects", context="projects")
        assert scope.permit_query("read_projects", context="projects")
        assert scope.obligations("read_projects", context="projects") == [{}]
        assert scope.decide("read_projects", context="projects").allowed


class TestPermitQuery:
    """permit_query() boolean answers."""

    def test_true_and_callback(self, plain_engine, admin):
        calls = []
        assert plain_engine.permit_query(
            "read_projects", lambda: calls.append(1), context="projects", subject=admin
        )
        assert calls == [1]

    def test_false_without_callback(self, attribute_engine, admin):
        calls = []
        assert not attribute_engine.permit_query(
            "read_projects", lambda: calls.append(1),
            context="projects", subject=admin, obj=Project(5),
        )
        assert calls == []

    def test_false_on_no_rule(self, plain_engine):
        assert not plain_engine.permit_query("read_projects", context="projects", subject=GuestUser())

    def test_usage_error_propagates(self, plain_engine, admin):
        with pytest.raises(AuthorizationUsageError):
            plain_engine.permit_query("read_projects", subject=admin)


class TestObligations:
    """obligations() derivation."""

    def test_scenario_d(self, attribute_engine, admin):
        assert attribute_engine.obligations("read_projects", context="projects", subject=admin) == [
            {"branch": {"company": ("equals", 24)}}
        ]

    def test_rule_without_attributes_contributes_empty(self, plain_engine, admin):
        assert plain_engine.obligations("read_projects", context="projects", subject=admin) == [{}]

    def test_flattened_in_rule_order(self, admin):
        engine = ReferenceMonitor(build_rule_set(
            admin_rule(
                Attribute({"branch": {"company": ("equals", subject_attr("company_id"))}}),
                Attribute({"owner": ("equals", subject_attr("user_id"))}),
            ),
            AuthorizationRule("member", ["read_projects"], ["projects"]),
        ))
        assert engine.obligations("read_projects", context="projects", subject=admin) == [
            {"branch": {"company": ("equals", 24)}},
            {"owner": ("equals", "u-1")},
            {},
        ]

    def test_no_matching_rules(self, plain_engine):
        assert plain_engine.obligations("read_projects", context="projects", subject=GuestUser()) == []

    def test_requires_context(self, plain_engine, admin):
        with pytest.raises(AuthorizationUsageError):
            plain_engine.obligations("read_projects", subject=admin)


class TestDecide:
    """Discriminated decision results."""

    def test_allowed(self, plain_engine, admin):
        decision = plain_engine.decide("read_projects", context="projects", subject=admin)
        assert decision.kind == DecisionKind.ALLOWED
        assert decision.allowed
        assert decision.context == "projects"
        assert decision.matched_rules == 1

    def test_denied_no_rule(self, plain_engine):
        decision = plain_engine.decide("read_projects", context="projects", subject=GuestUser())
        assert decision.kind == DecisionKind.DENIED
        assert decision.reason == DenialReason.NO_RULE
        assert decision.matched_rules == 0

    def test_denied_attributes(self, attribute_engine, admin):
        decision = attribute_engine.decide("read_projects", subject=admin, obj=Project(5))
        assert decision.kind == DecisionKind.DENIED
        assert decision.reason == DenialReason.NO_ATTRIBUTE_MATCH
        assert decision.context == "projects"
        assert decision.matched_rules == 1

    def test_usage_error(self, plain_engine):
        decision = plain_engine.decide("read_projects", context="projects")
        assert decision.kind == DecisionKind.ERROR
        assert decision.reason is None
        assert not decision.allowed

    def test_matched_rules_counts_every_matching_rule(self, admin):
        engine = ReferenceMonitor(build_rule_set(
            admin_rule(Attribute({"branch": {"company": ("equals", 24)}})),
            admin_rule(Attribute({"branch": {"company": ("equals", 7)}})),
        ))
        assert engine.decide("read_projects", subject=admin, obj=Project(24)).matched_rules == 2
        denied = engine.decide("read_projects", subject=admin, obj=Project(5))
        assert denied.reason == DenialReason.NO_ATTRIBUTE_MATCH
        assert denied.matched_rules == 2

    def test_bypass_matches_no_rules(self):
        set_config(AuthzConfig(mode=AuthzMode.TEST))
        try:
            ignore_access_control(True)
            decision = ReferenceMonitor(RuleSet()).decide("anything", subject=GuestUser())
        finally:
            ignore_access_control(False)
        assert decision.allowed
        assert decision.matched_rules == 0


class TestAccessControlBypass:
    """Test-only bypass flag."""

    def test_scenario_e_bypass_in_test_mode(self):
        set_config(AuthzConfig(mode=AuthzMode.TEST))
        engine = ReferenceMonitor(RuleSet())
        try:
            ignore_access_control(True)
            assert engine.permit("anything", subject=GuestUser())
        finally:
            ignore_access_control(False)

    def test_refused_outside_test_mode(self):
        with pytest.raises(AuthorizationUsageError):
            ignore_access_control(True)
        assert ignore_access_control() is False

    def test_inactive_after_leaving_test_mode(self):
        set_config(AuthzConfig(mode=AuthzMode.TEST))
        ignore_access_control(True)
        set_config(AuthzConfig(mode=AuthzMode.DEVELOPMENT))
        try:
            assert ignore_access_control() is False
            with pytest.raises(NotAuthorized):
                ReferenceMonitor(RuleSet()).permit("read", context="x", subject=GuestUser())
        finally:
            set_config(AuthzConfig(mode=AuthzMode.TEST))
            ignore_access_control(False)


class TestInferContext:
    """Context inference from objects."""

    def test_tablename(self):
        assert infer_context(Project(1)) == "projects"

    def test_table_name_attribute(self):
        class Invoice:
            table_name = "invoices"

        assert infer_context(Invoice()) == "invoices"

    def test_silent_none(self):
        assert infer_context(object()) is None
        assert infer_context(None) is None


class TestEngineLifecycle:
    """Construction and process-wide instance."""

    def test_missing_default_source_means_no_rules(self):
        engine = ReferenceMonitor()
        assert len(engine.rules) == 0
        with pytest.raises(NotAuthorized):
            engine.permit("read", context="projects", subject=GuestUser())

    def test_roles_exposed(self, plain_engine):
        assert plain_engine.roles == ("admin", "member", "guest")
        assert plain_engine.privileges == ("read_projects", "manage_projects")

    def test_explicit_missing_path_propagates(self):
        with pytest.raises(OSError):
            ReferenceMonitor("/nonexistent/other.yaml")

    def test_get_engine_is_singleton(self):
        assert get_engine() is get_engine()

    def test_init_engine_publishes(self, admin):
        engine = init_engine(build_rule_set(admin_rule()))
        assert get_engine() is engine

    def test_reload_swaps_instance(self):
        first = init_engine(build_rule_set(admin_rule()))
        second = reload_engine()
        assert second is not first
        assert get_engine() is second
        assert len(second.rules) == 1

    def test_reload_keeps_construction_options(self, admin):
        config = AuthzConfig(mode=AuthzMode.TEST, default_role="visitor")
        init_engine(RuleSet(), config=config, subject_provider=lambda: admin)
        reloaded = reload_engine()
        assert reloaded.config.default_role == "visitor"
        assert reloaded.hierarchy.default_role == "visitor"
        assert reloaded.subject_provider() is admin

    def test_reset_forgets_construction_options(self):
        init_engine(RuleSet(), config=AuthzConfig(mode=AuthzMode.TEST, default_role="visitor"))
        reset_engine()
        assert get_engine().config.default_role != "visitor"

    def test_development_reload_builds_new_instances(self):
        set_config(AuthzConfig(
            mode=AuthzMode.DEVELOPMENT, reload_rules=True, rules_path="/nonexistent/rules.yaml"
        ))
        assert get_engine() is not get_engine()

    def test_concurrent_reads_during_reload(self, admin):
        init_engine(build_rule_set(admin_rule()))
        errors = []

        def check():
            for _ in range(200):
                try:
                    get_engine().permit("read_projects", context="projects", subject=admin)
                except Exception as e:
                    errors.append(e)

        threads = [threading.Thread(target=check) for _ in range(4)]
        for thread in threads:
            thread.start()
        for _ in range(20):
            reload_engine()
        for thread in threads:
            thread.join()

        assert errors == []
        assert engine_module._engine is get_engine()
