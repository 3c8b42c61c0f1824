"""
Stage Registry — the canonical stage / sub-stage definition table
=================================================================
One static registry is shared by the WorkflowEngine (sub-stage state machine)
and the Orchestrator (per-stage agent fan-out). Each Stage carries both its
ordered sub-stages and its scheduling attributes (complexity tier, agent
count), so the two execution paths always agree on ordinals and names.

Definitions are immutable and never mutated at runtime.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from .errors import ValidationError
from .models import Complexity


@dataclass(frozen=True)
class SubStage:
    key: str
    name: str
    required: bool = False


@dataclass(frozen=True)
class Stage:
    stage_id: int
    name: str
    description: str
    sub_stages: tuple[SubStage, ...]
    outputs: tuple[str, ...] = ()
    complexity: Complexity = Complexity.MEDIUM
    agents: int = 1

    @property
    def required_sub_stages(self) -> tuple[SubStage, ...]:
        return tuple(s for s in self.sub_stages if s.required)

    @property
    def first_sub_stage_key(self) -> Optional[str]:
        return self.sub_stages[0].key if self.sub_stages else None

    def sub_stage(self, key: str) -> SubStage:
        for s in self.sub_stages:
            if s.key == key:
                return s
        raise ValidationError(f"Stage {self.stage_id} has no sub-stage {key!r}")

    def to_dict(self) -> dict:
        return {
            "stage_id": self.stage_id,
            "name": self.name,
            "description": self.description,
            "sub_stages": [
                {"key": s.key, "name": s.name, "required": s.required}
                for s in self.sub_stages
            ],
            "outputs": list(self.outputs),
            "complexity": self.complexity.value,
            "agents": self.agents,
        }


def _subs(*items: tuple[str, str, bool]) -> tuple[SubStage, ...]:
    return tuple(SubStage(key, name, required) for key, name, required in items)


# ─────────────────────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────────────────────

STAGES: tuple[Stage, ...] = (
    Stage(
        1, "Trigger Authentication",
        "Client-side interaction and project conceptualisation",
        _subs(
            ("phone_auth",        "Mobile number authentication",         True),
            ("email_relations",   "Email client relations",               True),
            ("knowledge_base",    "Meeting notes and search knowledge base", False),
            ("voice_capture",     "Voice-to-text capture",                False),
            ("chat_frontends",    "Chat front-end intake",                False),
            ("messaging_llms",    "Messaging channel assistants",         False),
            ("concept_tools",     "Concept and diagram assistants",       False),
            ("human_handoff",     "Core agent hand-off with human in loop", True),
        ),
        outputs=("authenticated_session", "project_concept",
                 "design_questionnaire", "requirements"),
        complexity=Complexity.LOW,
    ),
    Stage(
        2, "Prompt Engineering",
        "Internal data routing and project framework selection",
        _subs(
            ("zero_trust",        "Zero-trust network access",            True),
            ("threat_detection",  "Threat detection and response",        True),
            ("control_centre",    "Control centre transcription",         False),
            ("voice_notes",       "Voice note transcription",             False),
            ("project_runner",    "Project runner",                       False),
            ("admin_runner",      "Admin prompt runner",                  False),
            ("accelerators",      "Accelerator and cloud hosting",        False),
            ("local_models",      "Local model ecosystem",                True),
            ("git_init",          "Git init",                             True),
        ),
        outputs=("security_config", "framework_selection",
                 "requirements_criteria", "objectives"),
        complexity=Complexity.LOW,
    ),
    Stage(
        3, "Context Engineering",
        "Research, concept development and contextualisation",
        _subs(
            ("notes",             "Workspace notes",                      False),
            ("ai_context",        "AI workspace context",                 False),
            ("web_research",      "Web and NLP research",                 False),
            ("notebook_research", "Notebook research",                    False),
            ("deep_dives",        "Knowledge graph deep dives",           False),
            ("consolidation",     "Context consolidation",                True),
            ("modeling",          "Concept modelling",                    False),
            ("formatting",        "Meeting summary formatting",           False),
            ("documenting",       "Research documenting",                 False),
            ("browser_security",  "Browser automation security",          True),
            ("repo_orchestration", "Repository orchestration",            True),
        ),
        outputs=("research_doc", "concept_plan", "product_definition", "marketing_plan"),
        complexity=Complexity.HIGH,
        agents=3,
    ),
    Stage(
        4, "Project Documentation Package",
        "AI agent specifications and PRD generation",
        _subs(
            ("hr_agents",         "HR agent roster",                      False),
            ("spec_kit",          "Specification kit",                    True),
            ("web_scraping",      "Brand and web scraping",               False),
            ("senior_agent",      "Senior agent definitions",             True),
            ("agent_memory",      "Agent memory setup",                   True),
        ),
        outputs=("agent_specs", "prd", "project_files", "testing_scenarios"),
        complexity=Complexity.MEDIUM,
    ),
    Stage(
        5, "Pre-DevOps Plugins",
        "Cost-efficient, secure and scalable implementation",
        _subs(
            ("feeds",             "Cron jobs and RSS feeds",              False),
            ("automation",        "Workflow automation",                  False),
            ("mcp_apis",          "MCP servers and APIs",                 True),
            ("async_agents",      "Asynchronous coding agents",           False),
            ("code_review",       "Automated code review",                False),
            ("test_generation",   "Test generation",                      False),
            ("api_docs",          "API documentation",                    False),
            ("snippets",          "Snippet management",                   False),
            ("code_models",       "Code models",                          False),
            ("ml_analytics",      "ML, analytics and crawling",           True),
        ),
        outputs=("optimized_workflows", "token_strategies",
                 "security_protocols", "scalability_plan"),
        complexity=Complexity.MEDIUM,
    ),
    Stage(
        6, "Tooling Framework",
        "Container and orchestration environment setup",
        _subs(
            ("framework_selection", "Framework selection",                True),
            ("container_setup",   "Tooling container setup",              True),
        ),
        outputs=("docker_containers", "kubernetes_configs", "dev_environment"),
        complexity=Complexity.LOW,
    ),
    Stage(
        7, "Implementation Workspace",
        "Multi-phase development execution",
        _subs(
            ("chat_agents",       "General chat agents",                  False),
            ("open_coders",       "Open-source coding agents",            False),
            ("ui_builders",       "UI builders",                          False),
            ("app_generators",    "Full-stack app generators",            False),
            ("browser_ide",       "Browser IDE",                          False),
            ("code_assistants",   "Code assistants",                      False),
            ("terminal_agents",   "Terminal agents",                      False),
            ("agentic_ide",       "Agentic IDE",                          False),
            ("repo_agents",       "Repository agents",                    False),
            ("desktop_agents",    "Desktop automation agents",            False),
            ("headless_agents",   "Headless browser agents",              False),
            ("graphics_agents",   "Graphics agents",                      False),
            ("crm_agents",        "CRM agents",                           False),
            ("design_agents",     "Design agents",                        False),
            ("development_agents", "Development agents",                  False),
            ("analysis_agents",   "Analysis agents",                      False),
            ("review_agents",     "Review agents",                        False),
            ("senior_agents",     "Senior agents",                        False),
            ("reasoning_models",  "Reasoning models",                     False),
            ("data_analysts",     "Data analysis models",                 False),
            ("autonomous_agents", "Autonomous agents",                    False),
            ("multimodal_models", "Multimodal models",                    False),
            ("search_agents",     "Search agents",                        False),
            ("senior_pm",         "Senior project manager agent",         True),
        ),
        outputs=("mvp_implementation", "full_stack_app", "business_model", "features"),
        complexity=Complexity.HIGH,
        agents=6,
    ),
    Stage(
        8, "Project Admin, Task, Test & CI/CD",
        "Version control and quality assurance",
        _subs(
            ("admin_agents",      "Admin agents",                         False),
            ("browser_testing",   "Browser testing",                      False),
            ("retrieval_testing", "Retrieval testing",                    False),
            ("autonomous_dev",    "Autonomous developer",                 False),
            ("agent_crews",       "Agent crews",                          False),
            ("static_analysis",   "Static analysis",                      True),
            ("push_request",      "Pull request push",                    True),
        ),
        outputs=("benchmarks", "quality_reports", "security_scans", "validated_code"),
        complexity=Complexity.MEDIUM,
        agents=2,
    ),
    Stage(
        9, "Post-DevOps Validation Gates",
        "Final validation before deployment",
        _subs(
            ("feeds",             "Cron jobs and RSS feeds",              False),
            ("automation",        "Workflow automation",                  False),
            ("mcp_apis",          "MCP servers and APIs",                 True),
            ("async_agents",      "Asynchronous coding agents",           False),
            ("code_review",       "Automated code review",                False),
            ("test_generation",   "Test generation",                      False),
            ("api_docs",          "API documentation",                    False),
            ("snippets",          "Snippet management",                   False),
            ("code_models",       "Code models",                          False),
            ("ml_analytics",      "ML, analytics and crawling",           True),
        ),
        outputs=("validation_approval", "security_clearance",
                 "performance_benchmarks", "deployment_ready"),
        complexity=Complexity.LOW,
    ),
    Stage(
        10, "Deployment & Live Testing",
        "Continuous monitoring and maintenance loop",
        _subs(
            ("monitoring",        "Monitoring logs and operations",       True),
            ("testing",           "Testing",                              True),
            ("maintenance",       "Maintenance",                          True),
            ("iteration",         "Iteration",                            True),
            ("improvement",       "Improvement",                          True),
            ("quality_control",   "Quality control",                      True),
            ("loop",              "Loop",                                 True),
            ("ci_actions",        "CI actions",                           True),
        ),
        outputs=("live_system", "monitoring_dashboards", "test_reports", "maintenance_logs"),
        complexity=Complexity.MEDIUM,
    ),
)

# (stage_id, sub_stage_key) pairs where the agent-assist collaborator is consulted
HUMAN_ASSIST_POINTS: frozenset[tuple[int, str]] = frozenset({(1, "human_handoff")})

# Stages where the agent-optimize collaborator runs for every sub-stage
OPTIMIZE_STAGES: frozenset[int] = frozenset({5, 9})


# ─────────────────────────────────────────────────────────────────────────────
# Lookup
# ─────────────────────────────────────────────────────────────────────────────

def validate_registry(stages: Iterable[Stage]) -> None:
    """Raise ValidationError unless ordinals are 1..N and each stage is well formed."""
    stages = tuple(stages)
    if not stages:
        raise ValidationError("Stage registry is empty")
    for expected, stage in enumerate(stages, start=1):
        if stage.stage_id != expected:
            raise ValidationError(
                f"Stage ordinals must be contiguous from 1: "
                f"expected {expected}, got {stage.stage_id}"
            )
        if not stage.sub_stages:
            raise ValidationError(f"Stage {stage.stage_id} has no sub-stages")
        keys = [s.key for s in stage.sub_stages]
        if len(keys) != len(set(keys)):
            raise ValidationError(f"Stage {stage.stage_id} has duplicate sub-stage keys")
        if stage.agents < 1:
            raise ValidationError(f"Stage {stage.stage_id} needs at least one agent")


validate_registry(STAGES)

_BY_ID: dict[int, Stage] = {s.stage_id: s for s in STAGES}


def get_stage(stage_id: int) -> Stage:
    try:
        return _BY_ID[stage_id]
    except (KeyError, TypeError):
        raise ValidationError(f"Invalid stage id: {stage_id!r}") from None


def all_stages() -> tuple[Stage, ...]:
    return STAGES


def stage_count() -> int:
    return len(STAGES)


def is_human_assist_point(stage_id: int, sub_stage_key: str) -> bool:
    return (stage_id, sub_stage_key) in HUMAN_ASSIST_POINTS


def is_optimize_stage(stage_id: int) -> bool:
    return stage_id in OPTIMIZE_STAGES
