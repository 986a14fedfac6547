"""
iPXE script generation.

Renders the interactive boot menu offered to machines without a matching
profile, the chain script served as the iPXE entry point, and the boot
script for a matched profile.
"""

from typing import Any, Dict

import jinja2

_env = jinja2.Environment(
    keep_trailing_newline=True,
    undefined=jinja2.StrictUndefined,
    autoescape=False,
)

# iPXE expands ${...} itself; only {{ ... }} is ours.
MENU_TEMPLATE = _env.from_string("""#!ipxe
isset ${proxydhcp/next-server} || goto start
set next-server ${proxydhcp/next-server}
set filename ${proxydhcp/filename}

:start
menu iPXE boot menu for Talos
item --gap                      Talos Nodes
item --key i init               Bootstrap Node
item --key c controlplane       Master Node
item --key w worker             Worker Node
item --gap                      Other
item --key s shell              iPXE Shell
item --key r reboot             Reboot
item --key e exit               Exit
choose --timeout 0 --default worker selected || goto cancel
set menu-timeout 0
goto ${selected}
{% for type in boot_types %}
:{{ type }}
chain http://{{ ip }}:{{ port }}/ipxe?uuid=${uuid}&ip=${ip}&mac=${mac:hexhyp}&domain=${domain}&hostname=${hostname}&serial=${serial}&type={{ type }}
{% endfor %}
:reboot
reboot

:shell
shell

:cancel
:exit
exit
""")

CHAIN_TEMPLATE = _env.from_string("""#!ipxe
chain ipxe?uuid=${uuid}&ip=${ip}&mac=${mac:hexhyp}&domain=${domain}&hostname=${hostname}&serial=${serial}
""")

PROFILE_TEMPLATE = _env.from_string("""#!ipxe
kernel {{ kernel }}{% for arg in args %} {{ arg }}{% endfor %}
{% for image in initrd %}initrd {{ image }}
{% endfor %}boot
""")

MENU_BOOT_TYPES = ("init", "controlplane", "worker")


def render_menu(ip: str, port: int = 8080) -> str:
    """Render the boot menu with every choice chaining back to this server."""
    return MENU_TEMPLATE.render(ip=ip, port=port, boot_types=MENU_BOOT_TYPES)


def render_chain() -> str:
    return CHAIN_TEMPLATE.render()


def render_profile(boot: Dict[str, Any]) -> str:
    """
    Render the boot script for a profile's "boot" section.

    Raises:
        jinja2.TemplateError: kernel missing from the profile.
    """
    context = {"args": boot.get("args") or [], "initrd": boot.get("initrd") or []}
    if boot.get("kernel"):
        context["kernel"] = boot["kernel"]
    return PROFILE_TEMPLATE.render(**context)


def render_error(message: str) -> str:
    """Generate error iPXE script."""
    return f"""#!ipxe
echo ======================================
echo Talos PXE - Error
echo ======================================
echo {message}
echo.
echo Dropping to iPXE shell.
echo Type 'reboot' to restart.
shell
"""
