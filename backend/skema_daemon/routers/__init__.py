from importlib import import_module

# Re-export individual router modules so they can be imported as attributes

control = import_module('.control', __name__)
generate = import_module('.generate', __name__)
live_ws = import_module('.live_ws', __name__)
status = import_module('.status', __name__)
