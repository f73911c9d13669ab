"""Turn graph.

load_context -> route -> (direct | generate) -> validate
    -> (regenerate -> validate)* -> finalize -> END
"""

import logging
from typing import Any, Dict, Optional

from langgraph.graph import END, StateGraph

from ..agents.generation import FirstSentenceCallback
from ..observability.langsmith import build_trace_config
from .nodes import TurnNodes, route_after_routing, route_after_validation
from .state import TurnRequest, TurnState

logger = logging.getLogger(__name__)


class TurnGraph:
    """
    Wrapper class for the compiled turn graph.

    The graph is stateless between turns (everything is reloaded from the
    store), so it is compiled once without a checkpointer.
    """

    def __init__(self, nodes: TurnNodes):
        self.nodes = nodes
        self.graph = self._build_graph()

    def _build_graph(self):
        graph = StateGraph(TurnState)

        graph.add_node("load_context", self.nodes.load_context)
        graph.add_node("route", self.nodes.route)
        graph.add_node("direct", self.nodes.direct)
        graph.add_node("generate", self.nodes.generate)
        graph.add_node("validate", self.nodes.validate)
        graph.add_node("regenerate", self.nodes.regenerate)
        graph.add_node("finalize", self.nodes.finalize)

        graph.set_entry_point("load_context")
        graph.add_edge("load_context", "route")

        graph.add_conditional_edges(
            "route",
            route_after_routing,
            {
                "direct": "direct",
                "generate": "generate",
            },
        )
        graph.add_edge("direct", "finalize")
        graph.add_edge("generate", "validate")

        # Bounded by the validator's regeneration budget
        graph.add_conditional_edges(
            "validate",
            route_after_validation,
            {
                "regenerate": "regenerate",
                "finalize": "finalize",
            },
        )
        graph.add_edge("regenerate", "validate")
        graph.add_edge("finalize", END)

        return graph.compile()

    async def invoke(
        self,
        request: TurnRequest,
        on_first_sentence: Optional[FirstSentenceCallback] = None,
    ) -> TurnState:
        """
        Run one turn through the graph.

        Args:
            request: Incoming turn
            on_first_sentence: Optional callback for the streamed first sentence

        Returns:
            Final turn state (``response`` and ``outcome`` set)
        """
        configurable: Dict[str, Any] = {}
        if on_first_sentence is not None:
            configurable["on_first_sentence"] = on_first_sentence

        config = build_trace_config(
            thread_id=request.session_id,
            tags=["tutor-turn", request.modality],
            metadata={
                "learner_id": request.learner_id,
                "lesson_id": request.lesson_id,
                "session_id": request.session_id,
            },
            config={"configurable": configurable},
        )
        return await self.graph.ainvoke({"request": request}, config=config)
