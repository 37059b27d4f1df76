"""Tools the model can call to search the patient's record.

- registry.py:   Tool schemas, generated from the resource catalog plus the
                 hand-written composite tools
- composite.py:  Handlers for the composite tools (summary, fan-out search,
                 binary content, clinical notes)
- dispatcher.py: Runs a tool call and turns every outcome into a tool result
"""
