"""Instruction text handed to the coding agent for one claimed task."""

from __future__ import annotations

from task_dispatch.dispatch.models import Task

READ_PAGE_DIRECTIVE = """\
Before doing ANYTHING else, you MUST:
1. Use the Notion MCP to fetch the COMPLETE Notion page at: {url}
2. Read ALL the content on the page (not just the title)
3. Read ALL comments on the page to understand full context
4. Only after reading everything, understand what needs to be done

DO NOT make assumptions based on the title alone. The full page content and comments \
contain the actual requirements."""

HALT_DIRECTIVE = (
    "**CRITICAL:** If you CANNOT load the Notion page using the Notion MCP "
    "(e.g., authentication error, page not found, etc.), STOP IMMEDIATELY. "
    "Do not try alternative methods. Do not proceed with any work. Just exit the session. "
    "The Notion page is essential for understanding what to do."
)

HANDBACK_DIRECTIVE = """\
3. **When you're done or reach a stopping point**, you MUST update the Notion page:
   - Use the Notion MCP to update the page at {url}
   - Change the "Agent" property to whoever was requested in the document, or to the \
default if no one is mentioned to: "{assign_back_to}"
   - Update the "Status" property:
     * Set to "Done" if you've fully completed the task with high confidence
     * Keep as "In Progress" if there's more work to do or you're uncertain
   - Add a detailed comment to the page explaining:
     * What you accomplished
     * What still needs to be done (if anything)
     * Any blockers or questions
     * Current state of the code
     * Any specific instructions for {assign_back_to} about what to do next"""

INSTRUCTIONS_TEMPLATE = """\
You are working on a task from our Notion task database. Here are the details:

**Task Title:** {title}
**Project:** {project}
**Working Directory:** {project_path}
**Notion Page URL:** {url}
**Default Assign Back To:** {assign_back_to}

## FIRST STEP - READ THE NOTION PAGE

{read_page}

{halt}

## Your Mission

After reading the full Notion page and comments, work on completing this task in the \
project directory: {project_path}

You have access to a Notion MCP server that allows you to interact with Notion pages.

## CRITICAL RULES

1. **Work in the correct directory.** All your work should be done in: {project_path}

2. **DO NOT compile, run, or deploy anything.** Your job is to write code, fix bugs, \
or make changes, but NOT to execute or deploy.

{handback}

4. **Be thorough in your updates.** The next person (human or agent) needs to \
understand exactly where things stand.

5. **Task list management.** If you use task lists during your work, make sure to \
update them in your final comment so we know what's complete and what remains.

## Getting Started

Begin by understanding the task requirements, then proceed with the work in \
{project_path}. Remember: your final update to Notion is just as important as the \
code you write.

Good luck!"""


def compose_instructions(task: Task, *, assign_back_to: str) -> str:
    """Render the self-contained instruction text for one task.

    The read-first, halt-if-unreachable and hand-back directives are always
    present whatever the task fields contain.
    """

    return INSTRUCTIONS_TEMPLATE.format(
        title=task.title,
        project=task.project,
        project_path=task.project_path,
        url=task.url,
        assign_back_to=assign_back_to,
        read_page=READ_PAGE_DIRECTIVE.format(url=task.url),
        halt=HALT_DIRECTIVE,
        handback=HANDBACK_DIRECTIVE.format(url=task.url, assign_back_to=assign_back_to),
    )
