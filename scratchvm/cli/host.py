from __future__ import annotations

from ..host import check_commands, kvm_available
from ._common import _BaseCommand


class DoctorCLI(_BaseCommand):
    """Check host prerequisites and list missing required tools."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        cls.cli(argv=argv, data=kwargs)
        missing, missing_opt = check_commands()
        if not kvm_available():
            print('➖ /dev/kvm not available; the VM will run without acceleration.')
        if missing:
            print('❌ Missing required commands:', ', '.join(missing))
            print('💡 On Debian/Ubuntu: apt install qemu-utils qemu-system-x86 cloud-image-utils curl')
            return 2
        if missing_opt:
            print('➖ Missing optional commands:', ', '.join(missing_opt))
        print('✅ Required host commands are present.')
        return 0
