"""The engine frontend allows expressing models as computation graphs.

Modules:
    graph: Graph construction and manipulation.
    linearize: Topological sorting and recurrent loop detection.
    ir: Execution plan.
    network: Node ownership, validation and persistence.
    persist: Model stream encoding.
"""

# SPDX-License-Identifier: Apache-2.0
