"""
KVM/QEMU virtual machine backup and restore manager.
"""
__version__ = "1.0.0"
