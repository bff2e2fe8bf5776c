"""MCP prompt templates for common workflows."""

from agent_team.mcp.server import mcp


@mcp.prompt()
def plan_work(goal: str) -> str:
    """Generate a prompt to break down a goal into tasks for the team."""
    return (
        f"I need the team to accomplish the following goal:\n\n"
        f"{goal}\n\n"
        f"Please break this down into concrete, actionable tasks. For each task:\n"
        f"1. Give it a clear, concise title\n"
        f"2. Add a brief description of what needs to be done\n"
        f"3. Pick an owner from list_agents whose role and capabilities fit\n"
        f"4. Assign a priority: P0 for blockers, P1 for this sprint, P2 for later\n\n"
        f"Then use create_task to add them, and update_task with status='ready' "
        f"for the ones that can start right away."
    )


@mcp.prompt()
def sprint_review(project: str = "default") -> str:
    """Generate a prompt for a sprint review of the task board."""
    return (
        f"Please run a sprint review for the '{project}' project.\n\n"
        f"Use list_tasks to get the board, list_agents and agent_performance for the team, "
        f"and list_patterns for recurring work. Then provide:\n"
        f"1. What was completed and by whom\n"
        f"2. What is in progress or waiting on review\n"
        f"3. Which agents are struggling, based on success rate and suggestions\n"
        f"4. Recurring patterns that deserve a skill or a dedicated specialist\n"
        f"5. Recommended ready tasks for the next sprint check"
    )
