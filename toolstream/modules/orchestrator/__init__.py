"""
Orchestration Module - the agent loop

Components:
- StreamDecoder: provider stream events → per-block events
- ToolCallBufferTable: argument text per stream block
- DispatchCoordinator: completed buffer → exactly one work item
- ToolExecutorPool: per-session workers with dependency ordering
- LoopController: iterations, goal verification and termination
- RecoveryManager: failures → corrective model input
- ProgressBroadcaster: fire-and-forget progress events
- SessionRunner: many sessions with cancellation and hard timeouts

Usage:
    from toolstream.modules.orchestrator.loop_controller import LoopController

    controller = LoopController(model_client, registry, content_store=store)
    result = await controller.run("Create src/App.tsx")
"""
