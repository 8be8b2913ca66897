from order_gate.models.access_window import AccessWindow
from order_gate.models.device_binding import DeviceBinding
from order_gate.models.multi_order import MultiOrder
from order_gate.models.order_usage import OrderUsage

__all__ = ["AccessWindow", "DeviceBinding", "MultiOrder", "OrderUsage"]
