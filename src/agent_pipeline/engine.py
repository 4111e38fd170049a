# engine.py
# Sequential pipeline orchestration.
#
# Nodes run strictly in declaration order against one PipelineState. The
# first failed outcome halts the run; nothing after it executes.

from agent_pipeline.config import RuntimeConfig
from agent_pipeline.executors import AgentExecutor, GateExecutor, TaskExecutor
from agent_pipeline.llm import ModelClient
from agent_pipeline.logger import Logger
from agent_pipeline.models import ExecutionContext, NodeOutcome, Pipeline, PipelineResult, PipelineState


class UnknownNodeTypeError(Exception):
    """Raised when a node kind has no registered executor. Always fatal."""


class PipelineExecutor:
    def __init__(
        self,
        config: RuntimeConfig,
        logger: Logger | None = None,
        client: ModelClient | None = None,
        executors: dict | None = None,
    ) -> None:
        self.config = config
        self.logger = logger or Logger()
        self.executors = executors or {
            "task": TaskExecutor(self.logger),
            "gate": GateExecutor(self.logger),
            "agent": AgentExecutor(config, self.logger, client),
        }

    def execute(self, pipeline: Pipeline, context: ExecutionContext) -> PipelineResult:
        state = PipelineState(working_directory=context.working_directory, user_prompt=context.user_prompt)
        outcomes: list[NodeOutcome] = []
        total = 0

        self.logger.pipeline_start(pipeline.name or "Unnamed pipeline", pipeline.description, len(pipeline.nodes))

        for node in pipeline.nodes:
            executor = self.executors.get(node.type)
            if executor is None:
                raise UnknownNodeTypeError(f"Unknown node type: {node.type}")

            self.logger.node_start(node.id, node.type, node.description)
            outcome = executor.execute(node, state, context)
            outcomes.append(outcome)
            state.nodes[node.id] = outcome
            total += outcome.duration

            if not outcome.success:
                self.logger.node_failed(node.id, outcome.error or "Unknown error", outcome.duration)
                self.logger.pipeline_failed(node.id, outcome.error)
                return PipelineResult(success=False, outcomes=outcomes)

            self.logger.node_success(node.id, outcome.duration)

        self.logger.pipeline_success(len(outcomes), total, len(state.changed_files))
        return PipelineResult(success=True, outcomes=outcomes)
