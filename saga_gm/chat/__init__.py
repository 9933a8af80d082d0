"""
Game Master Chat Module

Streaming turn orchestration: wire events in, buffered narration, tool rounds,
hallucination audit and client events out. Import the submodules directly,
e.g. ``from saga_gm.chat.chat_orchestrator import ChatOrchestrator``.
"""
