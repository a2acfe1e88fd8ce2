import argparse
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

from chip8 import Chip8, Chip8Error, SCREEN_HEIGHT, SCREEN_WIDTH, read_rom


# ******************** STATIC SECTION
# the hex keypad laid over the left side of a QWERTY keyboard
#   1 2 3 C        1 2 3 4
#   4 5 6 D   ->   Q W E R
#   7 8 9 E        A S D F
#   A 0 B F        Z X C V
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

SCALE = int(os.getenv('SCALE', 10))
CYCLE_DELAY_MS = int(os.getenv('CYCLE_DELAY_MS', 2))     # throttle between two cycles
BLACK = pygame.Color(0, 0, 0, 255)
WHITE = pygame.Color(255, 255, 255, 255)


def get_rom_arg(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 emulator")
    parser.add_argument("rom", help="input rom file")
    args = parser.parse_args(argv)
    return args.rom


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE, bg_color=BLACK, fg_color=WHITE):
        self.w, self.h, self.scale = w, h, s
        self.background = bg_color
        self.foreground = fg_color
        self.surface = pygame.display.set_mode(
            (w * self.scale, h * self.scale),
        )
        self.surface.fill(self.background)

    def read_pixel(self, x, y):
        """return 1 if pixel is ON, return 0 if pixel is OFF"""
        p = self.surface.get_at((x * self.scale, y * self.scale))
        return 0 if p == self.background else 1

    def write_pixel(self, x, y, on):
        """
        set a pixel on the screen, being it a foreground pixel or a background one
        the change won't be immediatly visible because it'll require a call to the static method refresh
        """
        pygame.draw.rect(
            self.surface,
            self.foreground if on else self.background,
            (x * self.scale, y * self.scale, self.scale, self.scale)
        )

    @staticmethod
    def refresh():
        pygame.display.flip()

    def render(self, pixels):
        """paint a whole 64x32 frame and make it visible"""
        for y, row in enumerate(pixels):
            for x, on in enumerate(row):
                self.write_pixel(x, y, on)
        self.refresh()


class Keypad:
    def __init__(self, mappings=None):
        self.mappings = KEY_MAPPINGS if mappings is None else mappings

    def process(self, keys, event):
        """update the key latch on press/release of a mapped key, return False for any other event"""
        if event.type not in (pygame.KEYDOWN, pygame.KEYUP):
            return False
        if event.key not in self.mappings:
            return False
        keys[self.mappings[event.key]] = event.type == pygame.KEYDOWN
        return True


# ******************** ENTRY POINT SECTION
def emulate(chip, screen, keypad, delay=CYCLE_DELAY_MS):
    """run the machine until the window is closed or ESC is pressed"""
    run = True
    while run:
        # process user input
        # loop throught the event queue
        for event in pygame.event.get():
            if event.type == pygame.QUIT:
                run = False
            elif event.type == pygame.KEYDOWN and event.key == pygame.K_ESCAPE:
                run = False
            else:
                keypad.process(chip.keys, event)
        if not run:
            break
        chip.step()         # emulate one machine cycle (fetch opcode, decode opcode, execute opcode, update timers)
        # refresh screen if needed
        if chip.should_draw:
            screen.render(chip.pixels)
            chip.should_draw = False
        pygame.time.wait(delay)


def main(*args, **kwargs):
    rom_name = get_rom_arg()
    # CPU
    chip = Chip8()
    try:
        chip.mem.load_rom(read_rom(rom_name))
    except Chip8Error as e:
        sys.exit(f"********** THE ROM COULD NOT BE LOADED\n{e}")
    # pygame initialization
    pygame.init()
    pygame.display.set_caption(os.path.basename(rom_name))
    # IO
    s = Screen()
    k = Keypad()
    # emulation loop
    try:
        emulate(chip, s, k)
    except Chip8Error as e:
        sys.exit(f"********** THE EMULATOR CRASHED WITH THE FOLLOWING STATE\n{e}\n{chip}")
    finally:
        pygame.quit()


if __name__ == "__main__":
    main()
