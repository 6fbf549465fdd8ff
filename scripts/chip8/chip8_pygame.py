import logging
import sys

import os
os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_1, K_2, K_3, K_4,
    K_q, K_w, K_e, K_r,
    K_a, K_s, K_d, K_f,
    K_z, K_x, K_c, K_v,
)

from chip8 import (
    C8_FONTS, SCREEN_HEIGHT, SCREEN_WIDTH,
    LoadError, Machine, RuntimeBoundsError, UnknownOpcodeError, UsageError,
    parse_args, read_file,
)


log = logging.getLogger(__name__)


# ******************** STATIC SECTION
# the keyboard layout of the CHIP-8 is:     mapped to:
#   1 2 3 C                                 1 2 3 4
#   4 5 6 D                                 Q W E R
#   7 8 9 E                                 A S D F
#   A 0 B F                                 Z X C V
KEY_MAPPINGS = {
    K_x: 0x0,
    K_1: 0x1,
    K_2: 0x2,
    K_3: 0x3,
    K_q: 0x4,
    K_w: 0x5,
    K_e: 0x6,
    K_a: 0x7,
    K_s: 0x8,
    K_d: 0x9,
    K_z: 0xA,
    K_c: 0xB,
    K_4: 0xC,
    K_r: 0xD,
    K_f: 0xE,
    K_v: 0xF,
}

BLUE = pygame.Color(80,69,155,255)
LIGHT_BLUE = pygame.Color(136,126,203,255)


# ******************** I/O SECTION
class Screen:
    """blits the framebuffer snapshots coming from the machine to a scaled window"""
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=15, bg_color=BLUE, fg_color=LIGHT_BLUE):
        self.w, self.h, self.scale = w, h, s
        self.background = bg_color
        self.foreground = fg_color
        self.surface = pygame.display.set_mode(
            (w * self.scale, h * self.scale),
        )
        self.surface.fill(self.background)

    def write_pixel(self, x, y, color):
        pygame.draw.rect(
            self.surface,
            self.background if color==0 else self.foreground,
            (x * self.scale, y * self.scale, self.scale, self.scale)
        )

    def refresh(self, snapshot):
        self.surface.fill(self.background)
        for y, row in enumerate(snapshot):
            for x, pixel in enumerate(row):
                if pixel:
                    self.write_pixel(x, y, pixel)
        pygame.display.flip()

class Keyboard:
    """turns pygame key events into keypad transitions"""
    def __init__(self):
        self.quit = False

    def poll(self, keypad):
        """drain the event queue, return False once the user asked to quit"""
        for event in pygame.event.get():
            if event.type == pygame.QUIT:
                self.quit = True
            elif event.type == pygame.KEYDOWN:
                if event.key == pygame.K_ESCAPE:
                    self.quit = True
                elif event.key in KEY_MAPPINGS:
                    keypad.press(KEY_MAPPINGS[event.key])
            elif event.type == pygame.KEYUP and event.key in KEY_MAPPINGS:
                keypad.release(KEY_MAPPINGS[event.key])
        return not self.quit

def beep():
    # no tone generation, the event is only traced
    log.debug("beep")


# ******************** ENTRY POINT SECTION
def main(argv=None):
    try:
        args = parse_args(argv)
    except UsageError as ue:
        print(ue, file=sys.stderr)
        return 2
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO,
                        format="[%(levelname)s] %(message)s", stream=sys.stdout)
    if args.debug:
        log.info("debug mode turned on")
    log.info(f"target hz set to {args.hz}")

    try:
        font = read_file(args.font) if args.font else C8_FONTS
        rom = read_file(args.rom)
        machine = Machine(clock_hz=args.hz, strict=args.strict, on_beep=beep)
        machine.load(font, rom)
    except LoadError as le:
        sys.exit(f"********** UNABLE TO LOAD\n{le}")
    log.info(f"the ROM at path {args.rom} has been loaded successfully ({len(rom)} bytes)")

    # pygame initialization
    pygame.init()
    pygame.display.set_caption(os.path.basename(args.rom))
    screen = Screen(s=args.scale)
    screen.refresh(machine.state.screen.snapshot())
    machine.on_draw = screen.refresh
    keyboard = Keyboard()
    try:
        machine.run(keyboard.poll)
    except (RuntimeBoundsError, UnknownOpcodeError) as e:
        sys.exit(f"********** THE EMULATOR CRASHED: {e}\n{machine}")
    finally:
        pygame.quit()
    log.info("quitting...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
