import argparse
import sys
from pathlib import Path

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
    DEBUG, KEY_COUNT, PACER_INTERVAL, SCREEN_HEIGHT, SCREEN_WIDTH, TIMER_DIVIDER,
    Chip8, Chip8Error, Host,
)


# ******************** STATIC SECTION
# the 4x4 hex keypad laid over the left-hand side of a QWERTY keyboard
#   1 2 3 C        1 2 3 4
#   4 5 6 D   <-   Q W E R
#   7 8 9 E        A S D F
#   A 0 B F        Z X C V
KEY_MAPPINGS = {
    K_1: 0x1, K_2: 0x2, K_3: 0x3, K_4: 0xC,
    K_q: 0x4, K_w: 0x5, K_e: 0x6, K_r: 0xD,
    K_a: 0x7, K_s: 0x8, K_d: 0x9, K_f: 0xE,
    K_z: 0xA, K_x: 0x0, K_c: 0xB, K_v: 0xF,
}

SCALE = 15
BLACK = pygame.Color(0, 0, 0, 255)
GREEN = pygame.Color(0, 228, 54, 255)


# ******************** UTILITIES SECTION
def get_args(argv=None):
    parser = argparse.ArgumentParser(description="run a CHIP-8 ROM in a pygame window")
    parser.add_argument("-f", "--file", required=True, help="input rom file")
    parser.add_argument("--rate", type=int, default=PACER_INTERVAL, help="cycles emulated per second")
    parser.add_argument("--scale", type=int, default=SCALE, help="size in screen pixels of a CHIP-8 pixel")
    parser.add_argument("--divider", type=int, default=TIMER_DIVIDER, help="cycles per delay/sound timer tick")
    return parser.parse_args(argv)


def read_rom(path):
    rom = Path(path).read_bytes()
    if DEBUG: print(f"The ROM at path {path} has been read successfully ({len(rom)} bytes)")
    return rom


def keypad_state(pressed, mappings=KEY_MAPPINGS):
    """turn pygame's pressed keys sequence into the 16 keypad lines"""
    lines = [False] * KEY_COUNT
    for key, line in mappings.items():
        if pressed[key]:
            lines[line] = True
    return lines


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE, bg_color=BLACK, fg_color=GREEN):
        self.w, self.h, self.scale = w, h, s
        self.background = bg_color
        self.foreground = fg_color
        self.surface = pygame.display.set_mode((w * self.scale, h * self.scale))
        self.surface.fill(self.background)

    def render(self, framebuffer):
        """paint every pixel of the framebuffer, the change is visible after refresh"""
        self.surface.fill(self.background)
        for i, pixel in enumerate(framebuffer.buffer):
            if pixel:
                y, x = divmod(i, framebuffer.w)
                pygame.draw.rect(
                    self.surface,
                    self.foreground,
                    (x * self.scale, y * self.scale, self.scale, self.scale)
                )

    @staticmethod
    def refresh():
        pygame.display.flip()


class PygameHost(Host):
    def __init__(self, screen):
        self.screen = screen

    def read_keys(self):
        pygame.event.pump()     # keeps get_pressed() current while a FX0A is waiting
        return keypad_state(pygame.key.get_pressed())

    def publish(self, framebuffer):
        self.screen.render(framebuffer)
        self.screen.refresh()


# ******************** ENTRY POINT SECTION
def main(argv=None):
    args = get_args(argv)
    rom = read_rom(args.file)
    # pygame initialization
    pygame.init()
    clock = pygame.time.Clock()
    pygame.display.set_caption(Path(args.file).name)
    # IO
    host = PygameHost(Screen(s=args.scale))
    # CPU
    try:
        chip = Chip8(rom, host, timer_divider=args.divider)
    except Chip8Error as e:
        pygame.quit()
        sys.exit(f"********** THE ROM COULD NOT BE LOADED\n{e}")
    # emulation loop
    run = True
    while run:
        clock.tick(args.rate)
        for event in pygame.event.get():
            if event.type == pygame.QUIT:
                run = False
            elif event.type == pygame.KEYDOWN and event.key == pygame.K_ESCAPE:
                run = False
        try:
            chip.cycle()        # emulate one machine cycle (fetch opcode, decode opcode, execute opcode, update timers)
        except Chip8Error as e:
            pygame.quit()
            sys.exit(f"********** THE EMULATOR CRASHED WITH THE FOLLOWING STATE\n{e}\n{chip}")
        if DEBUG and chip.pacer.ticks == 0 and chip.awaiting_key is None:
            print(f"{chip.pacer.interval} cycles emulated, running at {clock.get_fps():.1f} cycles/s")
    pygame.quit()


if __name__ == "__main__":
    main()
